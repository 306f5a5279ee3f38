"""
Authentication service for the Cap Gold client.

Sign-in, sign-up, sign-out and session checks on top of the API client and
the token manager, plus the current-user state the UI reacts to.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from client.api_client import (
    APIClientError, CapGoldAPIClient, ConflictError, NotFoundError,
    ServerError, TooManyRequestsError
)
from client.auth.token_manager import TokenManager
from shared.exceptions import (
    AuthenticationError, AuthenticationFinalError, CapGoldError, NetworkError,
    SessionExpiredError, StorageFailure, ValidationError
)
from shared.logging_config import AuditLogger
from shared.models import TokenPair, TokenResponse, User

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r'^[0-9]{10,15}$')
MIN_PASSWORD_LENGTH = 6


class AuthErrorType(Enum):
    """Authentication error types with user-facing messages."""
    GENERIC = "An authentication error occurred"
    UNAUTHORIZED = "Authentication failed. Please check your credentials."
    SESSION_EXPIRED = "Your session has expired. Please sign in again."
    USER_NOT_FOUND = "User not found. Please check your email."
    USER_EXISTS = "An account with this email already exists."
    TOO_MANY_REQUESTS = "Too many requests. Please try again later."
    INVALID_REQUEST = "Invalid request. Please check your input."
    SERVER_ERROR = "Server error. Please try again later."
    NETWORK_ERROR = "Network error. Please check your connection."
    INVALID_INPUT = "Invalid input. Please check your details and try again."
    INVALID_STATE = "Invalid application state. Please try again."
    UNKNOWN = "An unknown error occurred."

    @property
    def message(self) -> str:
        return self.value

    @classmethod
    def from_exception(cls, error: BaseException) -> 'AuthErrorType':
        """Map an exception to the error type shown to the user."""
        if isinstance(error, (SessionExpiredError, AuthenticationFinalError)):
            return cls.SESSION_EXPIRED
        if isinstance(error, AuthenticationError):
            return cls.UNAUTHORIZED
        if isinstance(error, NetworkError):
            return cls.NETWORK_ERROR
        if isinstance(error, ValidationError):
            return cls.INVALID_INPUT
        if isinstance(error, NotFoundError):
            return cls.USER_NOT_FOUND
        if isinstance(error, ConflictError):
            return cls.USER_EXISTS
        if isinstance(error, TooManyRequestsError):
            return cls.TOO_MANY_REQUESTS
        if isinstance(error, ServerError):
            return cls.SERVER_ERROR
        if isinstance(error, APIClientError):
            if error.status_code == 400:
                return cls.INVALID_REQUEST
            return cls.GENERIC
        if isinstance(error, ValueError):
            return cls.INVALID_INPUT
        if isinstance(error, CapGoldError):
            return cls.GENERIC
        return cls.UNKNOWN


@dataclass
class AuthResult:
    """Outcome of a sign-in or sign-up attempt."""
    success: bool
    user: Optional[User] = None
    error: Optional[str] = None
    error_type: Optional[AuthErrorType] = None
    warning: Optional[str] = None


def validate_phone_number(phone: str) -> Optional[str]:
    """Return an error message, or None if the phone number is acceptable."""
    if not phone or not phone.strip():
        return "Phone number cannot be empty"
    if not PHONE_PATTERN.match(phone):
        return "Please enter a valid phone number"
    return None


def validate_login_identifier(identifier: str) -> Optional[str]:
    """Login accepts an email address or a phone number."""
    if not identifier or not identifier.strip():
        return "Email or phone number cannot be empty"
    if '@' in identifier:
        return None
    return validate_phone_number(identifier)


def validate_password(password: str, min_length: int = MIN_PASSWORD_LENGTH) -> Optional[str]:
    if not password or not password.strip():
        return "Password cannot be empty"
    if len(password) < min_length:
        return f"Password must be at least {min_length} characters"
    return None


class AuthService:
    """
    Session-level authentication for the client.

    The current user is cleared whenever the token manager ends the session,
    including a refresh rejected by the server.
    """

    def __init__(self, api_client: CapGoldAPIClient, token_manager: TokenManager,
                 audit_logger: Optional[AuditLogger] = None):
        self.api_client = api_client
        self.token_manager = token_manager
        self._audit = audit_logger or AuditLogger()

        self._current_user: Optional[User] = None
        self._is_loading = False
        self._last_error: Optional[AuthErrorType] = None
        self._epoch = 0

        self._auth_callbacks: List[Callable[[Optional[User]], None]] = []

        token_manager.add_token_callback(self._on_tokens_changed, emit_current=False)

    @property
    def current_user(self) -> Optional[User]:
        return self._current_user

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def last_error(self) -> Optional[AuthErrorType]:
        return self._last_error

    def is_signed_in(self) -> bool:
        return self._current_user is not None and self.token_manager.is_authenticated()

    def add_auth_state_callback(self, callback: Callable[[Optional[User]], None]) -> None:
        """
        Add callback for authentication state changes.

        Args:
            callback: Called with the signed-in user, or None after sign-out
        """
        self._auth_callbacks.append(callback)

    def remove_auth_state_callback(self, callback: Callable[[Optional[User]], None]) -> None:
        if callback in self._auth_callbacks:
            self._auth_callbacks.remove(callback)

    def _set_user(self, user: Optional[User]) -> None:
        changed = user != self._current_user
        self._current_user = user
        if changed:
            for callback in list(self._auth_callbacks):
                try:
                    callback(user)
                except Exception as e:
                    logger.error(f"Error in auth state callback: {e}")

    def _on_tokens_changed(self, tokens: Optional[TokenPair]) -> None:
        if tokens is None and self._current_user is not None:
            logger.info("Session ended, clearing current user")
            self._set_user(None)

    def _fail(self, error: BaseException) -> AuthResult:
        error_type = AuthErrorType.from_exception(error)
        self._last_error = error_type
        message = error.user_message if isinstance(error, CapGoldError) else error_type.message
        if isinstance(error, (APIClientError, AuthenticationError)) and str(error):
            message = str(error)
        return AuthResult(success=False, error=message, error_type=error_type)

    def _invalid(self, message: str, field_name: str) -> AuthResult:
        logger.debug(f"Rejected {field_name}: {message}")
        self._last_error = AuthErrorType.INVALID_INPUT
        return AuthResult(success=False, error=message, error_type=AuthErrorType.INVALID_INPUT)

    async def sign_in_with_email(self, email: str, password: str) -> AuthResult:
        """
        Sign in and start a session.

        Args:
            email: Email address or phone number
            password: Account password

        Returns:
            AuthResult with the user on success
        """
        self._last_error = None

        problem = validate_login_identifier(email)
        if problem:
            return self._invalid(problem, "email")
        problem = validate_password(password)
        if problem:
            return self._invalid(problem, "password")

        self._is_loading = True
        try:
            response = await self.api_client.sign_in_email(email, password)
            return await self._start_session(response.user, response.tokens, "email_signin")
        except asyncio.CancelledError:
            raise
        except (CapGoldError, APIClientError, ValueError) as e:
            logger.warning(f"Sign-in failed: {e}")
            self._audit.log_authentication("email_signin", success=False, failure_reason=str(e))
            return self._fail(e)
        finally:
            self._is_loading = False

    async def create_user_with_email(
        self,
        email: str,
        password: str,
        phone_number: str,
        display_name: Optional[str] = None
    ) -> AuthResult:
        """Create an account and start a session."""
        self._last_error = None

        if not email or not email.strip():
            return self._invalid("Email cannot be empty", "email")
        problem = validate_password(password)
        if problem:
            return self._invalid(problem, "password")
        if not phone_number or len(phone_number) < 10:
            return self._invalid("Please enter a valid phone number (at least 10 digits)", "phone_number")
        problem = validate_phone_number(phone_number)
        if problem:
            return self._invalid(problem, "phone_number")

        self._is_loading = True
        try:
            response = await self.api_client.sign_up_email(email, password, phone_number, display_name)
            return await self._start_session(response.user, response.tokens, "email_signup")
        except asyncio.CancelledError:
            raise
        except (CapGoldError, APIClientError, ValueError) as e:
            logger.warning(f"Sign-up failed: {e}")
            self._audit.log_authentication("email_signup", success=False, failure_reason=str(e))
            return self._fail(e)
        finally:
            self._is_loading = False

    async def _start_session(self, user: User, tokens: TokenResponse, method: str) -> AuthResult:
        self._epoch += 1
        warning: Optional[StorageFailure] = await self.token_manager.set_tokens_from_response(tokens, user.id)
        self._set_user(user)
        self._audit.log_authentication(method, user_id=user.id, success=True)
        logger.info(f"Signed in as user {user.id}")
        return AuthResult(
            success=True,
            user=user,
            warning=warning.user_message if warning else None
        )

    async def sign_out(self) -> None:
        """End the session locally. In-flight session checks are ignored afterwards."""
        self._is_loading = True
        self._last_error = None
        try:
            self._epoch += 1
            warning = await self.token_manager.clear_tokens(reason="sign_out")
            if warning:
                logger.warning(f"Stored tokens could not be removed: {warning.message}")
            self._set_user(None)
        finally:
            self._is_loading = False

    async def check_auth_state(self) -> Optional[User]:
        """
        Validate the stored session against the backend.

        Waits for the stored tokens to load, then fetches the current user.
        A session check that outlives a sign-in or sign-out changes nothing.
        Session failures sign the user out; network and server errors keep
        the current user. Tokens are only cleared by the token manager.

        Returns:
            The signed-in user, or None
        """
        self._is_loading = True
        self._last_error = None
        start_epoch = self._epoch
        try:
            await self.token_manager.await_initial_load()
            if start_epoch != self._epoch:
                return self._current_user
            if not self.token_manager.is_authenticated():
                logger.debug("No stored session")
                self._set_user(None)
                return None

            try:
                user = await self.api_client.get_me()
            except (CapGoldError, APIClientError) as e:
                if start_epoch != self._epoch:
                    logger.debug(f"Session changed during session check, ignoring error: {e}")
                    return self._current_user
                return self._check_failed(e)

            if start_epoch != self._epoch:
                logger.debug("Session changed during session check, ignoring result")
                return self._current_user

            self._set_user(user)
            return user
        finally:
            self._is_loading = False

    def _check_failed(self, error: BaseException) -> Optional[User]:
        if isinstance(error, SessionExpiredError):
            logger.info(f"Stored session is no longer valid: {error.message}")
            self._last_error = AuthErrorType.SESSION_EXPIRED
            self._set_user(None)
            return None
        if isinstance(error, AuthenticationFinalError):
            # Tokens stay; only an explicit sign-out or a rejected refresh clears them
            logger.warning(f"Identity check rejected after refresh: {error.message}")
            self._last_error = AuthErrorType.SESSION_EXPIRED
            self._set_user(None)
            return None
        logger.warning(f"Could not verify session: {error}")
        self._last_error = AuthErrorType.from_exception(error)
        return self._current_user
