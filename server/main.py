"""
Main entry point for the Cap Gold auth server.

This module loads the environment configuration and runs the FastAPI app
with uvicorn.
"""

import sys
import logging

from server.config import get_config, setup_logging

logger = logging.getLogger(__name__)


def main():
    """Main entry point for the server."""
    config = get_config()

    setup_logging(config)

    logger.info("Starting Cap Gold auth server...")
    logger.info(f"Configuration: host={config.server.host}, port={config.server.port}, "
                f"access token {config.security.access_token_minutes} min, "
                f"refresh token {config.security.refresh_token_days} days")
    logger.info(f"Environment: {config.server.environment}")

    try:
        import uvicorn
        from server.api.main import create_app

        uvicorn_config = uvicorn.Config(
            create_app(config),
            host=config.server.host,
            port=config.server.port,
            log_level=config.server.log_level.lower(),
            timeout_keep_alive=5,
            timeout_graceful_shutdown=30,
        )

        server = uvicorn.Server(uvicorn_config)
        server.run()

    except KeyboardInterrupt:
        logger.info("Server shutdown requested via keyboard interrupt")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)

    logger.info("Server shutdown complete")


if __name__ == "__main__":
    main()
