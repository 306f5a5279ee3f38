"""
Token issuing for the Cap Gold auth server.

Access tokens are short-lived HS256 JWTs. Refresh tokens are JWTs carrying a
``jti`` that is valid exactly once: rotating a refresh token consumes its
``jti`` and issues a new pair. Presenting a consumed refresh token revokes
every outstanding refresh token of that user.
"""

import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Any, Optional, Tuple

from jose import jwt, JWTError

from shared.exceptions import AuthenticationError, ErrorCode, RefreshRejectedError
from shared.models import TokenResponse, utc_now

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenService:
    """Issues, verifies and rotates token pairs."""

    def __init__(
        self,
        jwt_secret: Optional[str] = None,
        access_token_minutes: int = 15,
        refresh_token_days: int = 7,
        algorithm: str = 'HS256',
        clock: Callable[[], datetime] = utc_now
    ):
        self.jwt_secret = jwt_secret or secrets.token_urlsafe(32)
        self.access_token_lifetime = timedelta(minutes=access_token_minutes)
        self.refresh_token_lifetime = timedelta(days=refresh_token_days)
        self.algorithm = algorithm
        self._clock = clock

        self._lock = threading.Lock()
        # jti -> user id for refresh tokens that have not been used yet
        self._active_refresh: Dict[str, str] = {}
        self._consumed_refresh: Dict[str, str] = {}

    def _encode(self, user_id: str, token_type: str, lifetime: timedelta) -> Tuple[str, str]:
        now = self._clock()
        jti = secrets.token_hex(16)
        payload = {
            'sub': user_id,
            'type': token_type,
            'jti': jti,
            'iat': int(now.timestamp()),
            'exp': int((now + lifetime).timestamp()),
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=self.algorithm), jti

    def _decode(self, token: str, expected_type: str) -> Dict[str, Any]:
        """
        Decode and check a token against the service clock.

        Raises:
            AuthenticationError: Bad signature, wrong type or expired
        """
        try:
            payload = jwt.decode(
                token, self.jwt_secret, algorithms=[self.algorithm],
                options={'verify_exp': False}
            )
        except JWTError as e:
            logger.warning(f"JWT verification failed: {e}")
            raise AuthenticationError("Invalid authentication token", cause=e)

        if payload.get('type') != expected_type or not payload.get('sub'):
            raise AuthenticationError(f"Invalid {expected_type} token")

        expires_at = payload.get('exp', 0)
        if expires_at <= self._clock().timestamp():
            raise AuthenticationError(
                f"{expected_type.capitalize()} token expired",
                error_code=ErrorCode.AUTH_TOKEN_EXPIRED
            )

        return payload

    def issue_tokens(self, user_id: str) -> TokenResponse:
        """
        Issue a fresh access/refresh pair for a user.

        Args:
            user_id: Subject of both tokens

        Returns:
            TokenResponse with ``expires_in`` set to the access token lifetime
        """
        access_token, _ = self._encode(user_id, ACCESS_TOKEN_TYPE, self.access_token_lifetime)
        refresh_token, jti = self._encode(user_id, REFRESH_TOKEN_TYPE, self.refresh_token_lifetime)

        with self._lock:
            self._active_refresh[jti] = user_id

        logger.debug(f"Issued tokens for user {user_id}")
        return TokenResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.access_token_lifetime.total_seconds())
        )

    def verify_access_token(self, token: str) -> str:
        """
        Verify an access token.

        Returns:
            The user id the token was issued to

        Raises:
            AuthenticationError: If the token is not a valid, unexpired access token
        """
        return self._decode(token, ACCESS_TOKEN_TYPE)['sub']

    def rotate(self, refresh_token: str) -> Tuple[str, TokenResponse]:
        """
        Exchange a refresh token for a new pair. The presented token is consumed.

        Returns:
            Tuple of (user id, new tokens)

        Raises:
            RefreshRejectedError: Invalid, expired, revoked or reused token
        """
        try:
            payload = self._decode(refresh_token, REFRESH_TOKEN_TYPE)
        except AuthenticationError as e:
            raise RefreshRejectedError(e.message, status_code=401)

        jti = payload.get('jti')
        user_id = payload['sub']

        with self._lock:
            owner = self._active_refresh.pop(jti, None)
            if owner is None:
                if jti in self._consumed_refresh:
                    # A used token came back: treat the whole family as compromised
                    revoked = self._revoke_user_locked(user_id)
                    logger.warning(f"Refresh token reuse for user {user_id}, "
                                   f"revoked {revoked} outstanding token(s)")
                    raise RefreshRejectedError("Refresh token already used", status_code=401)
                raise RefreshRejectedError("Refresh token revoked", status_code=401)
            self._consumed_refresh[jti] = owner

        logger.info(f"Rotated refresh token for user {user_id}")
        return user_id, self.issue_tokens(user_id)

    def _revoke_user_locked(self, user_id: str) -> int:
        revoked = [jti for jti, owner in self._active_refresh.items() if owner == user_id]
        for jti in revoked:
            self._consumed_refresh[jti] = self._active_refresh.pop(jti)
        return len(revoked)
