"""
Exception hierarchy for the Cap Gold client and auth backend.

This module defines structured exceptions with error codes, context information,
and recovery suggestions. The token lifecycle failures (no refresh token,
rejected refresh, network failure, storage failure, final authentication
failure) are kept as distinct classes because callers decide between
"force sign-out" and "retry later" based on which one they get.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for Cap Gold."""

    # Authentication and Authorization Errors (1000-1199)
    AUTH_INVALID_TOKEN = "AUTH_1001"
    AUTH_TOKEN_EXPIRED = "AUTH_1002"
    AUTH_INSUFFICIENT_PERMISSIONS = "AUTH_1003"
    AUTH_USER_NOT_FOUND = "AUTH_1004"
    AUTH_REGISTRATION_FAILED = "AUTH_1005"
    AUTH_NO_REFRESH_TOKEN = "AUTH_1101"
    AUTH_REFRESH_REJECTED = "AUTH_1102"
    AUTH_SESSION_EXPIRED = "AUTH_1103"
    AUTH_FINAL_REJECTION = "AUTH_1104"
    AUTH_INVALID_CREDENTIALS = "AUTH_1105"
    AUTH_USER_EXISTS = "AUTH_1106"

    # Network and Communication Errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"
    NETWORK_INVALID_RESPONSE = "NETWORK_2003"
    NETWORK_SERVER_ERROR = "NETWORK_2004"

    # Token Storage Errors (3000-3099)
    STORAGE_WRITE_FAILED = "STORAGE_3001"
    STORAGE_READ_FAILED = "STORAGE_3002"
    STORAGE_UNAVAILABLE = "STORAGE_3003"

    # Validation Errors (4000-4099)
    VALIDATION_INVALID_INPUT = "VALIDATION_4001"
    VALIDATION_MISSING_REQUIRED_FIELD = "VALIDATION_4002"
    VALIDATION_INVALID_FORMAT = "VALIDATION_4003"
    VALIDATION_VALUE_OUT_OF_RANGE = "VALIDATION_4004"
    VALIDATION_DUPLICATE_VALUE = "VALIDATION_4005"

    # Resource Errors (5000-5099)
    RESOURCE_NOT_FOUND = "RESOURCE_5001"
    RESOURCE_CONFLICT = "RESOURCE_5002"

    # Configuration Errors (8000-8099)
    CONFIG_FILE_NOT_FOUND = "CONFIG_8001"
    CONFIG_INVALID_FORMAT = "CONFIG_8002"
    CONFIG_MISSING_REQUIRED_SETTING = "CONFIG_8003"
    CONFIG_INVALID_VALUE = "CONFIG_8004"

    # Internal Errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"
    INTERNAL_SERVICE_UNAVAILABLE = "INTERNAL_9002"
    INTERNAL_OPERATION_TIMEOUT = "INTERNAL_9004"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    RECONNECT = "reconnect"
    REFRESH_TOKEN = "refresh_token"
    SIGN_IN_AGAIN = "sign_in_again"
    USER_INTERVENTION = "user_intervention"
    CONTACT_ADMIN = "contact_admin"
    IGNORE = "ignore"


class CapGoldError(Exception):
    """
    Base exception class for all Cap Gold errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }

    def get_http_status_code(self) -> int:
        """Get appropriate HTTP status code for this error."""
        code_mapping = {
            ErrorCode.AUTH_INVALID_TOKEN: 401,
            ErrorCode.AUTH_TOKEN_EXPIRED: 401,
            ErrorCode.AUTH_NO_REFRESH_TOKEN: 401,
            ErrorCode.AUTH_REFRESH_REJECTED: 401,
            ErrorCode.AUTH_SESSION_EXPIRED: 401,
            ErrorCode.AUTH_FINAL_REJECTION: 401,
            ErrorCode.AUTH_INVALID_CREDENTIALS: 401,
            ErrorCode.AUTH_INSUFFICIENT_PERMISSIONS: 403,
            ErrorCode.AUTH_USER_NOT_FOUND: 404,
            ErrorCode.AUTH_USER_EXISTS: 409,
            ErrorCode.AUTH_REGISTRATION_FAILED: 400,

            ErrorCode.VALIDATION_INVALID_INPUT: 400,
            ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD: 400,
            ErrorCode.VALIDATION_INVALID_FORMAT: 400,
            ErrorCode.VALIDATION_VALUE_OUT_OF_RANGE: 400,
            ErrorCode.VALIDATION_DUPLICATE_VALUE: 409,

            ErrorCode.RESOURCE_NOT_FOUND: 404,
            ErrorCode.RESOURCE_CONFLICT: 409,

            ErrorCode.INTERNAL_SERVICE_UNAVAILABLE: 503,
            ErrorCode.NETWORK_TIMEOUT: 408,
            ErrorCode.INTERNAL_OPERATION_TIMEOUT: 408,
        }

        return code_mapping.get(self.error_code, 500)


# Specific exception classes for different error categories

class AuthenticationError(CapGoldError):
    """Authentication and authorization related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.AUTH_INVALID_TOKEN, **kwargs):
        recovery_actions = kwargs.pop(
            'recovery_actions', [RecoveryAction.REFRESH_TOKEN, RecoveryAction.RECONNECT]
        )
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=recovery_actions,
            **kwargs
        )


class NoRefreshTokenError(AuthenticationError):
    """No refresh token is stored; the session cannot be renewed."""

    def __init__(self, message: str = "No refresh token available", **kwargs):
        kwargs.setdefault('user_message', "Please sign in.")
        super().__init__(
            message,
            error_code=ErrorCode.AUTH_NO_REFRESH_TOKEN,
            recovery_actions=[RecoveryAction.SIGN_IN_AGAIN],
            **kwargs
        )


class RefreshRejectedError(AuthenticationError):
    """The server rejected the refresh token (invalid, expired or already used)."""

    def __init__(self, message: str = "Refresh token rejected by server",
                 status_code: Optional[int] = None, **kwargs):
        context = kwargs.pop('context', {})
        if status_code is not None:
            context['status_code'] = status_code
        kwargs.setdefault('user_message', "Your session has expired. Please sign in again.")
        super().__init__(
            message,
            error_code=ErrorCode.AUTH_REFRESH_REJECTED,
            recovery_actions=[RecoveryAction.SIGN_IN_AGAIN],
            context=context,
            **kwargs
        )
        self.status_code = status_code


class SessionExpiredError(AuthenticationError):
    """A request needed a refresh and the session could not be renewed."""

    def __init__(self, message: str = "Session expired", **kwargs):
        kwargs.setdefault('user_message', "Your session has expired. Please sign in again.")
        super().__init__(
            message,
            error_code=ErrorCode.AUTH_SESSION_EXPIRED,
            recovery_actions=[RecoveryAction.SIGN_IN_AGAIN],
            **kwargs
        )


class AuthenticationFinalError(AuthenticationError):
    """The request was rejected again after a successful refresh and retry."""

    def __init__(self, message: str = "Request rejected after token refresh", **kwargs):
        kwargs.setdefault('user_message', "Please sign in again.")
        super().__init__(
            message,
            error_code=ErrorCode.AUTH_FINAL_REJECTION,
            recovery_actions=[RecoveryAction.SIGN_IN_AGAIN],
            **kwargs
        )


class InvalidCredentialsError(AuthenticationError):
    """Sign-in credentials were not accepted."""

    def __init__(self, message: str = "Invalid email or password", **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.AUTH_INVALID_CREDENTIALS,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class NetworkError(CapGoldError):
    """Network and communication related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_WITH_BACKOFF, RecoveryAction.RECONNECT],
            **kwargs
        )


class NetworkFailureError(NetworkError):
    """Transient failure while talking to the backend. Stored tokens stay intact."""

    def __init__(self, message: str = "Network failure", **kwargs):
        error_code = kwargs.pop('error_code', ErrorCode.NETWORK_CONNECTION_FAILED)
        kwargs.setdefault('user_message', "Please check your internet connection and try again.")
        super().__init__(message, error_code=error_code, **kwargs)


class StorageFailure(CapGoldError):
    """Token persistence failed. Non-fatal for the in-memory session."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.IGNORE],
            **kwargs
        )


class ValidationError(CapGoldError):
    """Input validation related errors."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        # Extract context from kwargs to avoid duplicate parameter
        context = kwargs.pop('context', None) or {}
        if field_name:
            context['field_name'] = field_name

        error_code = kwargs.pop('error_code', ErrorCode.VALIDATION_INVALID_INPUT)
        severity = kwargs.pop('severity', ErrorSeverity.LOW)
        recovery_actions = kwargs.pop('recovery_actions', [RecoveryAction.USER_INTERVENTION])

        super().__init__(
            message=message,
            error_code=error_code,
            severity=severity,
            recovery_actions=recovery_actions,
            context=context,
            **kwargs
        )
        self.field_name = field_name


class ResourceError(CapGoldError):
    """A catalog item, order or user that does not exist or clashes with another."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.RESOURCE_NOT_FOUND, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class ConfigurationError(CapGoldError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', None) or {}
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION, RecoveryAction.CONTACT_ADMIN],
            context=context,
            **kwargs
        )


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> CapGoldError:
    """
    Convert a generic exception to a structured CapGoldError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured CapGoldError
    """
    if isinstance(exception, CapGoldError):
        return exception

    exception_mapping = {
        ConnectionError: (ErrorCode.NETWORK_CONNECTION_FAILED, NetworkError),
        TimeoutError: (ErrorCode.NETWORK_TIMEOUT, NetworkError),
        PermissionError: (ErrorCode.STORAGE_UNAVAILABLE, StorageFailure),
        FileNotFoundError: (ErrorCode.CONFIG_FILE_NOT_FOUND, ConfigurationError),
        ValueError: (ErrorCode.VALIDATION_INVALID_INPUT, ValidationError),
    }

    error_code, error_class = exception_mapping.get(
        type(exception),
        (default_error_code, CapGoldError)
    )

    return error_class(
        message=str(exception),
        error_code=error_code,
        context=context,
        cause=exception
    )
