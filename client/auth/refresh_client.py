"""
Token refresh HTTP call.

Exchanges a refresh token for a new token response at
``POST /api/auth/refresh`` and classifies every failure as either a server
rejection or a network failure. The request never carries an Authorization
header.
"""

import asyncio
import json
import logging
from typing import Any, Optional
from urllib.parse import urljoin

from aiohttp import ClientError, ClientSession, ClientTimeout

from shared.exceptions import ErrorCode, NetworkFailureError, RefreshRejectedError
from shared.interfaces import IRefreshClient
from shared.models import TokenResponse

logger = logging.getLogger(__name__)

REFRESH_ENDPOINT = "/api/auth/refresh"
USER_AGENT = "CapGoldClient/1.0"


class TokenRefreshClient(IRefreshClient):
    """
    Performs the unauthenticated refresh request.

    A short-lived session is opened per call so the client can be used from
    whichever event loop runs the refresh.
    """

    def __init__(self, server_url: str, timeout: float = 30.0):
        self.server_url = server_url.rstrip('/')
        self.timeout = ClientTimeout(total=timeout)
        self.url = urljoin(self.server_url + '/', REFRESH_ENDPOINT.lstrip('/'))

    async def refresh(self, refresh_token: str) -> TokenResponse:
        """
        Request a new token pair.

        Args:
            refresh_token: The current refresh token

        Returns:
            Parsed token response

        Raises:
            RefreshRejectedError: On 401 or 403
            NetworkFailureError: On transport errors, timeouts, 5xx, other
                unexpected statuses or a malformed success body
        """
        logger.debug(f"Requesting token refresh from {self.url}")

        try:
            async with ClientSession(
                timeout=self.timeout,
                headers={'User-Agent': USER_AGENT, 'Content-Type': 'application/json'}
            ) as session:
                async with session.post(self.url, json={'refreshToken': refresh_token}) as response:
                    status = response.status
                    body = await response.text()
        except asyncio.TimeoutError as e:
            raise NetworkFailureError(
                "Token refresh timed out", error_code=ErrorCode.NETWORK_TIMEOUT, cause=e
            )
        except (ClientError, OSError) as e:
            raise NetworkFailureError(f"Token refresh request failed: {e}", cause=e)

        if status in (401, 403):
            detail = extract_error_message(body) or "Refresh token rejected"
            logger.warning(f"Refresh token rejected by server ({status}): {detail}")
            raise RefreshRejectedError(detail, status_code=status)

        if status >= 500:
            raise NetworkFailureError(
                f"Server error during token refresh ({status})",
                error_code=ErrorCode.NETWORK_SERVER_ERROR,
                context={'status_code': status}
            )

        if not 200 <= status < 300:
            raise NetworkFailureError(
                f"Unexpected status during token refresh ({status}): {extract_error_message(body)}",
                error_code=ErrorCode.NETWORK_INVALID_RESPONSE,
                context={'status_code': status}
            )

        try:
            return TokenResponse.from_json(json.loads(body))
        except ValueError as e:
            raise NetworkFailureError(
                f"Malformed token refresh response: {e}",
                error_code=ErrorCode.NETWORK_INVALID_RESPONSE,
                cause=e
            )

    async def close(self) -> None:
        """Nothing is held open between calls."""
        return None


def extract_error_message(body: str) -> Optional[str]:
    """Pull an error message out of a JSON or plain-text error body."""
    if not body:
        return None
    try:
        data: Any = json.loads(body)
    except ValueError:
        return body.strip()[:200]
    if isinstance(data, dict):
        for key in ('error', 'detail', 'message'):
            value = data.get(key)
            if isinstance(value, str):
                return value
            if isinstance(value, dict) and isinstance(value.get('message'), str):
                return value['message']
    return None

