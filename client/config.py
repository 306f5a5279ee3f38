"""
Configuration Management for the Cap Gold client.

This module handles client configuration including server URL, request
timeouts, token storage and refresh settings, and logging, with support for
configuration files and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser

from shared.interfaces import IConfigurationManager

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_TEMPLATE = """# Cap Gold Client Configuration
# Configuration file: {config_path}

[server]
# Backend URL (required)
url = http://localhost:8080

# Request timeout in seconds
timeout = 30

# Retry attempts for idempotent requests on network errors
retry_attempts = 3

[auth]
# Refresh the access token this many seconds before it expires
refresh_margin_seconds = 60

# Token storage backend: auto, keyring, file, memory
token_storage = auto

[logging]
# Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
level = INFO
"""


class ClientConfiguration(IConfigurationManager):
    """
    Configuration manager for the Cap Gold client.

    Supports configuration from:
    1. Command line arguments (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    ENV_MAPPINGS = {
        'CAPGOLD_SERVER_URL': ('server', 'url'),
        'CAPGOLD_TIMEOUT': ('server', 'timeout'),
        'CAPGOLD_RETRY_ATTEMPTS': ('server', 'retry_attempts'),
        'CAPGOLD_REFRESH_MARGIN': ('auth', 'refresh_margin_seconds'),
        'CAPGOLD_TOKEN_STORAGE': ('auth', 'token_storage'),
        'CAPGOLD_TOKEN_FILE': ('auth', 'token_file'),
        'CAPGOLD_KEYRING_SERVICE': ('auth', 'service_name'),
        'CAPGOLD_LOG_LEVEL': ('logging', 'level'),
        'CAPGOLD_LOG_FILE': ('logging', 'file'),
        'CAPGOLD_LOG_FORMAT': ('logging', 'format'),
    }

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Any] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path, creating it on first use."""
        config_dir = Path.home() / '.capgold'
        user_config_path = config_dir / 'client.conf'

        if not user_config_path.exists():
            try:
                config_dir.mkdir(parents=True, exist_ok=True)
                self._create_default_config(str(user_config_path))
            except OSError as e:
                logger.warning(f"Could not create default configuration: {e}")

        return str(user_config_path)

    def _create_default_config(self, config_path: str) -> None:
        """Create a minimal default configuration file."""
        with open(config_path, 'w') as f:
            f.write(DEFAULT_CONFIG_TEMPLATE.format(config_path=config_path))
        logger.info(f"Created default configuration file: {config_path}")

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            try:
                self._load_from_file()
                logger.info(f"Configuration loaded from: {self._config_file}")
            except Exception as e:
                logger.warning(f"Failed to load configuration file: {e}")
        else:
            logger.info(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        config.read(self._config_file)

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # Numbers, booleans and lists are stored as JSON
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in self.ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is None:
                continue

            section_data = self._config_data.setdefault(section, {})
            if value.lower() in ('true', 'false'):
                section_data[key] = value.lower() == 'true'
            elif value.isdigit():
                section_data[key] = int(value)
            else:
                section_data[key] = value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'server': {
                'url': 'http://localhost:8080',
                'timeout': 30.0,
                'retry_attempts': 3,
                'retry_delay': 1.0
            },
            'auth': {
                'refresh_margin_seconds': 60,
                'token_storage': 'auto',
                'token_file': None,
                'service_name': 'cap-gold-client'
            },
            'logging': {
                'level': 'INFO',
                'file': None,
                'format': 'standard',
                'audit_file': None
            }
        }

        for section, section_defaults in defaults.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                if key not in section_data:
                    section_data[key] = default_value

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        return self._config_data.get(section, {}).get(config_key, default)

    def set_config(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            value: Value to set
        """
        if '.' not in key:
            self._config_data[key] = value
            return

        section, config_key = key.split('.', 1)
        self._config_data.setdefault(section, {})[config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key in format 'section.key'
            value: Override value
        """
        self._overrides[key] = value

    def save_configuration(self) -> None:
        """Save current configuration (without overrides) to file."""
        config = ConfigParser()

        for section_name, section_data in self._config_data.items():
            if not isinstance(section_data, dict):
                continue
            config.add_section(section_name)
            for key, value in section_data.items():
                if value is None:
                    continue
                if isinstance(value, (dict, list, bool)):
                    config.set(section_name, key, json.dumps(value))
                else:
                    config.set(section_name, key, str(value))

        config_path = Path(self._config_file)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self._config_file, 'w') as f:
            config.write(f)

        logger.info(f"Configuration saved to: {self._config_file}")

    def get_all_config(self) -> Dict[str, Any]:
        """Get all configuration data."""
        return {section: dict(data) if isinstance(data, dict) else data
                for section, data in self._config_data.items()}

    def get_config_file_path(self) -> str:
        """Get configuration file path."""
        return self._config_file

    def reload_config(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    # Convenience methods for common configuration values

    def get_server_url(self) -> str:
        """Get server URL."""
        return str(self.get_config('server.url')).rstrip('/')

    def get_server_timeout(self) -> float:
        """Get server request timeout."""
        return float(self.get_config('server.timeout', 30.0))

    def get_retry_attempts(self) -> int:
        return int(self.get_config('server.retry_attempts', 3))

    def get_retry_delay(self) -> float:
        return float(self.get_config('server.retry_delay', 1.0))

    def get_refresh_margin_seconds(self) -> float:
        """Seconds before expiry at which the access token is refreshed."""
        return float(self.get_config('auth.refresh_margin_seconds', 60))

    def get_token_storage_backend(self) -> str:
        return str(self.get_config('auth.token_storage', 'auto')).lower()

    def get_token_file(self) -> Optional[str]:
        return self.get_config('auth.token_file')

    def get_keyring_service(self) -> str:
        return self.get_config('auth.service_name', 'cap-gold-client')

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_file(self) -> Optional[str]:
        """Get log file path."""
        return self.get_config('logging.file')

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()

    def get_audit_file(self) -> Optional[str]:
        return self.get_config('logging.audit_file')
