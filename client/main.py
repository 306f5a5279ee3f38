"""
Main entry point for the Cap Gold client.

This module is the composition root: it builds the configuration, token
storage, token manager, API client and auth service once and wires them
together. It also provides the command-line interface for session and
catalog operations.
"""

import asyncio
import argparse
import getpass
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any

from client.api_client import APIClientError, CapGoldAPIClient, RetryConfig
from client.auth.auth_service import AuthService
from client.auth.refresh_client import TokenRefreshClient
from client.auth.token_manager import TokenManager
from client.auth.token_storage import MemoryTokenStorage, create_token_storage
from client.config import ClientConfiguration
from shared.exceptions import CapGoldError, SessionExpiredError
from shared.logging_config import AuditLogger, LogFormat, LogLevel, setup_logging
from shared.models import OrderStatus, token_fingerprint

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_AUTH_FAILED = 2
EXIT_ERROR = 3
EXIT_INTERRUPTED = 130


@dataclass
class ClientContext:
    """Everything the client needs for one run, created by build_context()."""
    config: ClientConfiguration
    token_manager: TokenManager
    api_client: CapGoldAPIClient
    auth_service: AuthService

    async def start(self) -> None:
        await self.token_manager.load_initial()

    async def close(self) -> None:
        await self.api_client.close()
        await self.token_manager.shutdown()


def build_context(config: ClientConfiguration, persist: bool = True) -> ClientContext:
    """
    Create the client object graph.

    Args:
        config: Loaded client configuration
        persist: Store tokens with the configured backend; in memory otherwise

    Returns:
        ClientContext holding one token manager shared by all components
    """
    if persist:
        storage = create_token_storage(
            config.get_token_storage_backend(),
            service_name=config.get_keyring_service(),
            token_file=config.get_token_file()
        )
    else:
        storage = MemoryTokenStorage()

    server_url = config.get_server_url()
    timeout = config.get_server_timeout()
    audit = AuditLogger()

    token_manager = TokenManager(
        storage,
        TokenRefreshClient(server_url, timeout=timeout),
        refresh_margin_seconds=config.get_refresh_margin_seconds(),
        audit_logger=audit
    )
    api_client = CapGoldAPIClient(
        server_url,
        token_manager,
        timeout=timeout,
        retry_config=RetryConfig(
            max_retries=config.get_retry_attempts(),
            base_delay=config.get_retry_delay()
        )
    )
    auth_service = AuthService(api_client, token_manager, audit_logger=audit)

    logger.debug(f"Client context built for {server_url} "
                 f"(storage: {type(storage).__name__})")
    return ClientContext(config, token_manager, api_client, auth_service)


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Cap Gold Client",
        epilog="""
Examples:
  %(prog)s --signin user@example.com      # Sign in (prompts for password)
  %(prog)s --whoami                       # Show the signed-in user
  %(prog)s --orders --status PENDING      # List pending orders
  %(prog)s --products --json              # Approved products as JSON
  %(prog)s --signout                      # End the session
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    operation_group = parser.add_mutually_exclusive_group()
    operation_group.add_argument("--signin", type=str, metavar="EMAIL",
                                 help="Sign in with email or phone number")
    operation_group.add_argument("--signup", type=str, metavar="EMAIL",
                                 help="Create an account (requires --phone)")
    operation_group.add_argument("--signout", action="store_true",
                                 help="Sign out and remove stored tokens")
    operation_group.add_argument("--whoami", action="store_true",
                                 help="Show the signed-in user")
    operation_group.add_argument("--refresh", action="store_true",
                                 help="Refresh the session tokens now")
    operation_group.add_argument("--orders", action="store_true",
                                 help="List orders")
    operation_group.add_argument("--products", action="store_true",
                                 help="List approved products")
    operation_group.add_argument("--categories", action="store_true",
                                 help="List product categories")

    account_group = parser.add_argument_group('Account')
    account_group.add_argument("--phone", type=str, metavar="PHONE",
                               help="Phone number for --signup")
    account_group.add_argument("--name", type=str, metavar="NAME",
                               help="Display name for --signup")

    filter_group = parser.add_argument_group('Filters')
    filter_group.add_argument("--status", type=str, metavar="STATUS",
                              choices=[s.value for s in OrderStatus],
                              help="Order status filter for --orders")
    filter_group.add_argument("--query", type=str, metavar="TEXT",
                              help="Search text for --orders")

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Path to configuration file")
    config_group.add_argument("--server-url", type=str, metavar="URL",
                              help="Override server URL")
    config_group.add_argument("--no-persist", action="store_true",
                              help="Keep tokens in memory only")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Output results as JSON")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true",
                             help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE",
                             help="Log to file")

    args = parser.parse_args(argv)

    if args.signup and not args.phone:
        parser.error("--signup requires --phone")
    if (args.status or args.query) and not args.orders:
        parser.error("--status and --query can only be used with --orders")

    return args


def configure_logging(args, config: ClientConfiguration) -> None:
    """Configure logging from configuration and command line arguments."""
    if args.debug:
        level = LogLevel.DEBUG
    else:
        try:
            level = LogLevel(config.get_log_level())
        except ValueError:
            level = LogLevel.INFO
        # Keep stdout clean for JSON consumers
        if args.json and level in (LogLevel.DEBUG, LogLevel.INFO):
            level = LogLevel.WARNING

    try:
        log_format = LogFormat(config.get_log_format())
    except ValueError:
        log_format = LogFormat.STANDARD
    if args.debug and log_format == LogFormat.STANDARD:
        log_format = LogFormat.DETAILED

    setup_logging(
        log_level=level,
        log_format=log_format,
        log_file=args.log_file or config.get_log_file(),
        enable_audit=bool(config.get_audit_file()),
        audit_file=config.get_audit_file()
    )


def _emit(args, data: Any, text: str) -> None:
    if args.json:
        print(json.dumps(data, indent=2, default=str))
    else:
        print(text)


async def run_command(args, context: ClientContext) -> int:
    """
    Run the requested operation.

    Args:
        args: Parsed command line arguments
        context: Started client context

    Returns:
        Exit code
    """
    auth = context.auth_service
    api = context.api_client

    if args.signin:
        password = getpass.getpass("Password: ")
        result = await auth.sign_in_with_email(args.signin, password)
        if not result.success:
            print(f"Sign-in failed: {result.error}", file=sys.stderr)
            return EXIT_AUTH_FAILED
        if result.warning:
            print(f"Warning: {result.warning}", file=sys.stderr)
        _emit(args, result.user.to_dict(), f"Signed in as {result.user.email or result.user.id}")
        return EXIT_SUCCESS

    if args.signup:
        password = getpass.getpass("Password: ")
        result = await auth.create_user_with_email(args.signup, password, args.phone, args.name)
        if not result.success:
            print(f"Sign-up failed: {result.error}", file=sys.stderr)
            return EXIT_AUTH_FAILED
        _emit(args, result.user.to_dict(), f"Account created for {result.user.email}")
        return EXIT_SUCCESS

    if args.signout:
        await auth.sign_out()
        _emit(args, {'signedIn': False}, "Signed out")
        return EXIT_SUCCESS

    if args.refresh:
        result = await context.token_manager.refresh_token()
        if not result.ok:
            print(f"Refresh failed ({result.outcome.value}): {result.message}", file=sys.stderr)
            return EXIT_AUTH_FAILED if result.requires_sign_out else EXIT_FAILED
        _emit(
            args,
            {'outcome': result.outcome.value, 'expiresAt': result.tokens.access_token_expiry.isoformat()},
            f"Session refreshed (access {token_fingerprint(result.tokens.access_token)}, "
            f"expires {result.tokens.access_token_expiry.isoformat()})"
        )
        return EXIT_SUCCESS

    if args.orders or args.products or args.categories or args.whoami:
        if not context.token_manager.is_authenticated():
            print("Not signed in", file=sys.stderr)
            return EXIT_AUTH_FAILED

    if args.orders:
        status = OrderStatus(args.status) if args.status else None
        page = await api.search_orders(status=status, query=args.query)
        lines = [f"{o.id}  {o.status.value:<10} {o.product_name or o.product_id} x{o.quantity}"
                 f"  {o.total_price:.2f}" for o in page.orders]
        _emit(args, [o.__dict__ for o in page.orders],
              "\n".join(lines) if lines else "No orders")
        return EXIT_SUCCESS

    if args.products:
        products = await api.get_approved_products()
        lines = [f"{p.id}  {p.name}  {p.price:.2f}" for p in products]
        _emit(args, [p.to_dict() for p in products], "\n".join(lines) if lines else "No products")
        return EXIT_SUCCESS

    if args.categories:
        categories = await api.get_categories()
        _emit(args, [c.__dict__ for c in categories],
              "\n".join(f"{c.id}  {c.name}" for c in categories) or "No categories")
        return EXIT_SUCCESS

    # --whoami is the default operation
    user = await auth.check_auth_state()
    if user is None:
        message = auth.last_error.message if auth.last_error else "Not signed in"
        print(message, file=sys.stderr)
        return EXIT_AUTH_FAILED
    _emit(args, user.to_dict(),
          f"{user.display_name or user.name or '-'} <{user.email or '-'}> "
          f"phone={user.phone_number or '-'} admin={'yes' if user.is_admin else 'no'}")
    return EXIT_SUCCESS


async def run_client(args, config: ClientConfiguration) -> int:
    context = build_context(config, persist=not args.no_persist)
    await context.start()
    try:
        return await run_command(args, context)
    except SessionExpiredError as e:
        print(f"{e.user_message}", file=sys.stderr)
        return EXIT_AUTH_FAILED
    except CapGoldError as e:
        logger.error(f"Operation failed: {e.message}")
        print(f"Error: {e.user_message}", file=sys.stderr)
        return EXIT_FAILED
    except APIClientError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        await context.close()


def main(argv=None) -> int:
    """Main entry point for the client."""
    args = None
    try:
        args = parse_arguments(argv)

        config = ClientConfiguration(args.config)
        if args.server_url:
            config.set_override('server.url', args.server_url)

        configure_logging(args, config)
        return asyncio.run(run_client(args, config))

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_INTERRUPTED
    except Exception as e:
        print(f"Fatal error: {str(e)}", file=sys.stderr)
        if args is not None and not args.json:
            logger.exception("Fatal error in main")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
