"""
Tests for client and server configuration and the client entry point.
"""

import pytest

from client.auth.token_storage import MemoryTokenStorage
from client.config import ClientConfiguration
from client.main import EXIT_AUTH_FAILED, EXIT_SUCCESS, build_context, parse_arguments, run_command
from server.config import get_env_list, load_config
from tests.conftest import make_pair


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for env_var in ClientConfiguration.ENV_MAPPINGS:
        monkeypatch.delenv(env_var, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "client.conf"
    path.write_text(
        "[server]\n"
        "url = https://api.capgold.test/\n"
        "timeout = 10\n"
        "\n"
        "[auth]\n"
        "refresh_margin_seconds = 120\n"
        "token_storage = memory\n"
    )
    return path


class TestClientConfiguration:

    def test_values_from_file(self, config_file):
        config = ClientConfiguration(str(config_file))

        assert config.get_server_url() == "https://api.capgold.test"
        assert config.get_server_timeout() == 10.0
        assert config.get_refresh_margin_seconds() == 120.0
        assert config.get_token_storage_backend() == "memory"

    def test_defaults_fill_missing_values(self, config_file):
        config = ClientConfiguration(str(config_file))

        assert config.get_retry_attempts() == 3
        assert config.get_keyring_service() == "cap-gold-client"
        assert config.get_log_level() == "INFO"
        assert config.get_token_file() is None

    def test_missing_file_uses_defaults(self, tmp_path):
        config = ClientConfiguration(str(tmp_path / "absent.conf"))

        assert config.get_server_url() == "http://localhost:8080"
        assert config.get_refresh_margin_seconds() == 60.0

    def test_environment_beats_file(self, config_file, monkeypatch):
        monkeypatch.setenv("CAPGOLD_SERVER_URL", "http://env-host:9000")
        monkeypatch.setenv("CAPGOLD_REFRESH_MARGIN", "30")
        monkeypatch.setenv("CAPGOLD_LOG_LEVEL", "debug")

        config = ClientConfiguration(str(config_file))

        assert config.get_server_url() == "http://env-host:9000"
        assert config.get_refresh_margin_seconds() == 30.0
        assert config.get_log_level() == "DEBUG"

    def test_override_beats_everything(self, config_file, monkeypatch):
        monkeypatch.setenv("CAPGOLD_SERVER_URL", "http://env-host:9000")
        config = ClientConfiguration(str(config_file))

        config.set_override("server.url", "http://cli-host:1234/")

        assert config.get_server_url() == "http://cli-host:1234"

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "saved.conf"
        config = ClientConfiguration(str(path))
        config.set_config("auth.token_storage", "file")
        config.set_config("server.retry_attempts", 5)
        config.save_configuration()

        reloaded = ClientConfiguration(str(path))
        assert reloaded.get_token_storage_backend() == "file"
        assert reloaded.get_retry_attempts() == 5

    def test_reload_picks_up_environment(self, config_file, monkeypatch):
        config = ClientConfiguration(str(config_file))
        monkeypatch.setenv("CAPGOLD_TIMEOUT", "45")

        config.reload_config()

        assert config.get_server_timeout() == 45.0


class TestServerConfig:

    def test_defaults(self, monkeypatch):
        for key in ("HTTP_PORT", "ACCESS_TOKEN_MINUTES", "REFRESH_TOKEN_DAYS", "CORS_ORIGINS",
                    "JWT_ALGORITHM", "ENVIRONMENT"):
            monkeypatch.delenv(key, raising=False)

        config = load_config()

        assert config.server.port == 8080
        assert config.server.cors_origins == ["*"]
        assert config.security.access_token_minutes == 15
        assert config.security.refresh_token_days == 7
        assert config.security.jwt_algorithm == "HS256"

    def test_environment_values(self, monkeypatch):
        monkeypatch.setenv("HTTP_PORT", "9090")
        monkeypatch.setenv("ACCESS_TOKEN_MINUTES", "5")
        monkeypatch.setenv("STRUCTURED_LOGGING", "true")
        monkeypatch.setenv("JWT_SECRET_KEY", "from-env")

        config = load_config()

        assert config.server.port == 9090
        assert config.server.structured_logging is True
        assert config.security.access_token_minutes == 5
        assert config.security.jwt_secret_key == "from-env"

    def test_bad_integer_falls_back(self, monkeypatch):
        monkeypatch.setenv("HTTP_PORT", "not-a-port")
        assert load_config().server.port == 8080

    def test_env_list(self, monkeypatch):
        monkeypatch.setenv("CORS_ORIGINS", "http://a.test, http://b.test,")
        assert get_env_list("CORS_ORIGINS") == ["http://a.test", "http://b.test"]


class TestCommandLine:

    def test_default_operation_is_whoami(self):
        args = parse_arguments([])
        assert not any([args.signin, args.signup, args.signout, args.orders])

    def test_signup_requires_phone(self):
        with pytest.raises(SystemExit):
            parse_arguments(["--signup", "new@capgold.com"])

    def test_filters_require_orders(self):
        with pytest.raises(SystemExit):
            parse_arguments(["--products", "--status", "pending"])

    def test_operations_are_exclusive(self):
        with pytest.raises(SystemExit):
            parse_arguments(["--signout", "--whoami"])

    @pytest.mark.asyncio
    async def test_context_shares_one_token_manager(self, config_file):
        context = build_context(ClientConfiguration(str(config_file)), persist=False)
        try:
            assert isinstance(context.token_manager.storage, MemoryTokenStorage)
            assert context.api_client.token_manager is context.token_manager
            assert context.auth_service.token_manager is context.token_manager
            assert context.token_manager.refresh_margin.total_seconds() == 120
            assert context.api_client.server_url == "https://api.capgold.test"
        finally:
            await context.close()

    @pytest.mark.asyncio
    async def test_signout_command(self, config_file, capsys):
        context = build_context(ClientConfiguration(str(config_file)), persist=False)
        await context.start()
        await context.token_manager.set_tokens(make_pair())
        try:
            code = await run_command(parse_arguments(["--signout"]), context)
        finally:
            await context.close()

        assert code == EXIT_SUCCESS
        assert context.token_manager.current_tokens is None
        assert "Signed out" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_protected_command_needs_session(self, config_file, capsys):
        context = build_context(ClientConfiguration(str(config_file)), persist=False)
        await context.start()
        try:
            code = await run_command(parse_arguments(["--products"]), context)
        finally:
            await context.close()

        assert code == EXIT_AUTH_FAILED
        assert "Not signed in" in capsys.readouterr().err
