"""
Configuration module for the Cap Gold auth server.

This module centralizes all configuration management using environment variables
with appropriate defaults and validation.
"""

import os
import logging
from typing import Optional, List
from dataclasses import dataclass

from shared.logging_config import LogFormat, LogLevel, setup_logging as setup_shared_logging

DEFAULT_JWT_SECRET = "change-this-secret-in-production"


@dataclass
class ServerConfig:
    """HTTP server configuration settings."""
    host: str
    port: int
    environment: str
    log_level: str
    log_file: Optional[str]
    cors_origins: List[str]
    structured_logging: bool


@dataclass
class SecurityConfig:
    """Token issuing and password settings."""
    jwt_secret_key: str
    jwt_algorithm: str
    access_token_minutes: int
    refresh_token_days: int
    min_password_length: int


@dataclass
class AppConfig:
    """Complete application configuration."""
    server: ServerConfig
    security: SecurityConfig


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on')


def get_env_int(key: str, default: int) -> int:
    """Get integer value from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def get_env_list(key: str, default: List[str] = None, separator: str = ',') -> List[str]:
    """Get list value from environment variable."""
    if default is None:
        default = []

    value = os.getenv(key, '')
    if not value:
        return default

    return [item.strip() for item in value.split(separator) if item.strip()]


def load_config() -> AppConfig:
    """Load configuration from environment variables."""
    server_config = ServerConfig(
        host=os.getenv("HTTP_HOST", "0.0.0.0"),
        port=get_env_int("HTTP_PORT", 8080),
        environment=os.getenv("ENVIRONMENT", "production"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_file=os.getenv("LOG_FILE") or None,
        cors_origins=get_env_list("CORS_ORIGINS", ["*"]),
        structured_logging=get_env_bool("STRUCTURED_LOGGING", False)
    )

    security_config = SecurityConfig(
        jwt_secret_key=os.getenv("JWT_SECRET_KEY", DEFAULT_JWT_SECRET),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_minutes=get_env_int("ACCESS_TOKEN_MINUTES", 15),
        refresh_token_days=get_env_int("REFRESH_TOKEN_DAYS", 7),
        min_password_length=get_env_int("MIN_PASSWORD_LENGTH", 6)
    )

    if security_config.jwt_secret_key == DEFAULT_JWT_SECRET and server_config.environment == "production":
        logging.getLogger(__name__).warning("JWT_SECRET_KEY is not set, using the built-in default")

    return AppConfig(server=server_config, security=security_config)


def setup_logging(config: AppConfig) -> None:
    """Setup logging configuration based on config."""
    try:
        level = LogLevel(config.server.log_level)
    except ValueError:
        level = LogLevel.INFO

    setup_shared_logging(
        log_level=level,
        log_format=LogFormat.JSON if config.server.structured_logging else LogFormat.STANDARD,
        log_file=config.server.log_file
    )

    if config.server.environment == "development":
        logging.getLogger("uvicorn").setLevel(logging.DEBUG)
        logging.getLogger("uvicorn.access").setLevel(logging.DEBUG)
    else:
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> AppConfig:
    """Reload configuration from environment variables."""
    global _config
    _config = load_config()
    return _config
