"""
HTTP API Client for the Cap Gold client.

This module provides the HTTP client for the backend: bearer-token
attachment with proactive refresh, a single refresh-and-retry after a 401,
retry with backoff on network errors, and the auth, product, category, order
and user endpoints.
"""

import asyncio
import json
import logging
import random
from typing import Optional, Dict, Any, List, Tuple
from urllib.parse import urljoin

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from client.auth.refresh_client import extract_error_message
from client.auth.token_manager import TokenManager
from shared.exceptions import (
    AuthenticationFinalError, ErrorCode, InvalidCredentialsError, NetworkFailureError,
    NoRefreshTokenError, RefreshRejectedError, SessionExpiredError
)
from shared.models import (
    AuthResponse, Category, Order, OrderRequest, OrderStatus, OrdersPage,
    Product, RefreshOutcome, RefreshResult, User, UsersPage
)

logger = logging.getLogger(__name__)

# Credential-issuing endpoints never carry an Authorization header
PUBLIC_ENDPOINTS = frozenset([
    '/api/auth/signin/email',
    '/api/auth/signup/email',
    '/api/auth/refresh',
])


def is_public_endpoint(endpoint: str) -> bool:
    path = '/' + endpoint.split('?', 1)[0].strip('/')
    return path in PUBLIC_ENDPOINTS


class APIClientError(Exception):
    """Base exception for API client errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ForbiddenError(APIClientError):
    """The server refused the request (403)."""
    pass


class NotFoundError(APIClientError):
    """The requested resource does not exist (404)."""
    pass


class ConflictError(APIClientError):
    """The request conflicts with existing state (409)."""
    pass


class TooManyRequestsError(APIClientError):
    """Rate limited by the server (429)."""
    pass


class ServerError(APIClientError):
    """Server-side errors."""
    pass


class RetryConfig:
    """Configuration for retry logic on network errors."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


class CapGoldAPIClient:
    """
    HTTP API client for the Cap Gold backend.

    Authenticated requests take their bearer token from the TokenManager. A
    token that is expired or about to expire is refreshed before sending; a
    401 triggers one refresh and one retry, and a second 401 raises
    AuthenticationFinalError.
    """

    def __init__(
        self,
        server_url: str,
        token_manager: TokenManager,
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None
    ):
        self.server_url = server_url.rstrip('/')
        self.token_manager = token_manager
        self.timeout = ClientTimeout(total=timeout)
        self.retry_config = retry_config or RetryConfig()

        self._session: Optional[ClientSession] = None

        logger.info(f"API client initialized for server: {server_url}")

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={
                    'User-Agent': 'CapGoldClient/1.0',
                    'Accept': 'application/json'
                }
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, endpoint: str) -> str:
        return urljoin(self.server_url + '/', endpoint.lstrip('/'))

    async def _access_token_for_request(self) -> Optional[str]:
        """Current access token, refreshed first if it is stale."""
        try:
            return await self.token_manager.get_valid_access_token()
        except (NoRefreshTokenError, RefreshRejectedError) as e:
            raise SessionExpiredError(f"Session could not be renewed: {e.message}", cause=e)

    @staticmethod
    def _refresh_failure(result: RefreshResult) -> Exception:
        if result.outcome is RefreshOutcome.NETWORK_FAILURE:
            return NetworkFailureError(result.message or "Token refresh failed")
        return SessionExpiredError(f"Session could not be renewed: {result.message}")

    async def _send(
        self,
        method: str,
        url: str,
        data: Optional[Any],
        params: Optional[Dict[str, Any]],
        token: Optional[str],
        retry: bool
    ) -> Tuple[int, str]:
        """
        Send one logical request, retrying on network errors if allowed.

        Returns:
            Status code and response body text

        Raises:
            NetworkFailureError: When every attempt failed at the transport level
        """
        await self._ensure_session()

        headers = {}
        if token:
            headers['Authorization'] = f'Bearer {token}'

        max_attempts = (self.retry_config.max_retries if retry else 0) + 1
        last_exception: Optional[BaseException] = None

        for attempt in range(max_attempts):
            try:
                logger.debug(f"Making {method} request to {url} (attempt {attempt + 1})")
                async with self._session.request(
                    method=method,
                    url=url,
                    json=data,
                    params=params,
                    headers=headers
                ) as response:
                    return response.status, await response.text()

            except (ClientError, asyncio.TimeoutError, OSError) as e:
                last_exception = e
                logger.warning(f"Network error on attempt {attempt + 1}: {e}")

                if attempt + 1 >= max_attempts:
                    break

                delay = self.retry_config.delay_for(attempt)
                logger.info(f"Retrying in {delay:.1f} seconds...")
                await asyncio.sleep(delay)

        error_code = (ErrorCode.NETWORK_TIMEOUT if isinstance(last_exception, asyncio.TimeoutError)
                      else ErrorCode.NETWORK_CONNECTION_FAILED)
        raise NetworkFailureError(
            f"Network request failed after {max_attempts} attempt(s): {last_exception}",
            error_code=error_code,
            cause=last_exception if isinstance(last_exception, Exception) else None
        )

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
        retry: bool = False
    ) -> Any:
        """
        Make HTTP request with token handling and error mapping.

        Args:
            method: HTTP method (GET, POST, PUT, PATCH, DELETE)
            endpoint: API endpoint path
            data: Request body data
            params: Query parameters
            authenticated: Whether to attach the bearer token
            retry: Whether to retry on network errors

        Returns:
            Decoded JSON body ({} for an empty body)

        Raises:
            SessionExpiredError: The session is gone and the user must sign in
            AuthenticationFinalError: Still rejected after refresh and retry
            NetworkFailureError: Transport failure
            APIClientError: Any other non-2xx response
        """
        url = self._url(endpoint)
        if authenticated and is_public_endpoint(endpoint):
            authenticated = False

        token = await self._access_token_for_request() if authenticated else None
        status, body = await self._send(method, url, data, params, token, retry)

        if status == 401 and authenticated:
            current = self.token_manager.current_access_token()
            if current and current != token:
                # Another caller already renewed the session
                logger.debug("Access token changed while request was in flight, retrying")
                new_token = current
            else:
                logger.info(f"{method} {endpoint} rejected with 401, refreshing token")
                result = await self.token_manager.refresh_token()
                if not result.ok:
                    raise self._refresh_failure(result)
                new_token = result.tokens.access_token

            status, body = await self._send(method, url, data, params, new_token, retry)
            if status == 401:
                detail = extract_error_message(body) or "Unauthorized"
                logger.warning(f"{method} {endpoint} rejected again after token refresh: {detail}")
                raise AuthenticationFinalError(f"Request rejected after token refresh: {detail}")

        return self._handle_response(method, endpoint, status, body)

    @staticmethod
    def _handle_response(method: str, endpoint: str, status: int, body: str) -> Any:
        if 200 <= status < 300:
            if not body.strip():
                return {}
            try:
                return json.loads(body)
            except ValueError:
                return {'message': body}

        detail = extract_error_message(body) or "Unknown error"
        logger.debug(f"{method} {endpoint} failed with {status}: {detail}")

        if status == 401:
            raise InvalidCredentialsError(detail)
        elif status == 403:
            raise ForbiddenError(f"Forbidden: {detail}", status)
        elif status == 404:
            raise NotFoundError(f"Not found: {detail}", status)
        elif status == 409:
            raise ConflictError(f"Conflict: {detail}", status)
        elif status == 429:
            raise TooManyRequestsError(f"Too many requests: {detail}", status)
        elif status >= 500:
            raise ServerError(f"Server error ({status}): {detail}", status)
        raise APIClientError(f"Request failed ({status}): {detail}", status)

    @staticmethod
    def _items(response: Any, key: str) -> List[Dict[str, Any]]:
        """List payload that may be bare or wrapped under ``key``."""
        if isinstance(response, list):
            return response
        if isinstance(response, dict) and isinstance(response.get(key), list):
            return response[key]
        return []

    @staticmethod
    def _record(response: Any, key: str) -> Dict[str, Any]:
        """Object payload that may be bare or wrapped under ``key``."""
        if isinstance(response, dict):
            if isinstance(response.get(key), dict):
                return response[key]
            return response
        raise APIClientError(f"Unexpected response body, expected a {key} object")

    def _user(self, response: Any) -> User:
        return User.from_dict(self._record(response, 'user'))

    # Auth

    async def sign_in_email(self, email: str, password: str) -> AuthResponse:
        """Sign in with email and password."""
        response = await self._make_request(
            'POST', '/api/auth/signin/email',
            data={'email': email, 'password': password},
            authenticated=False
        )
        return AuthResponse.from_json(response)

    async def sign_up_email(
        self,
        email: str,
        password: str,
        phone_number: str,
        display_name: Optional[str] = None
    ) -> AuthResponse:
        """Create an account with email and password."""
        response = await self._make_request(
            'POST', '/api/auth/signup/email',
            data={
                'email': email,
                'password': password,
                'phoneNumber': phone_number,
                'displayName': display_name
            },
            authenticated=False
        )
        return AuthResponse.from_json(response)

    async def get_me(self) -> User:
        """Fetch the signed-in user's profile."""
        return self._user(await self._make_request('GET', '/api/auth/me', retry=True))

    async def update_me(
        self,
        current_password: str,
        display_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        shop_name: Optional[str] = None,
        email: Optional[str] = None
    ) -> User:
        """
        Update profile fields. The server checks the current password.

        Returns:
            The updated user
        """
        updates = {
            'displayName': display_name,
            'phoneNumber': phone_number,
            'shopName': shop_name,
            'email': email,
        }
        payload = {k: v for k, v in updates.items() if v is not None}
        payload['currentPassword'] = current_password
        return self._user(await self._make_request('PUT', '/api/auth/me', data=payload))

    async def change_phone(self, new_phone: str, password: str) -> User:
        return await self.update_me(password, phone_number=new_phone)

    async def change_name(self, new_name: str, password: str) -> User:
        return await self.update_me(password, display_name=new_name)

    async def change_shop_name(self, new_shop_name: str, password: str) -> User:
        return await self.update_me(password, shop_name=new_shop_name)

    async def change_password(self, current_password: Optional[str], new_password: str) -> User:
        response = await self._make_request(
            'POST', '/api/auth/password/change',
            data={'currentPassword': current_password, 'newPassword': new_password}
        )
        return self._user(response)

    # Products

    async def get_approved_products(self) -> List[Product]:
        response = await self._make_request('GET', '/api/products/approved', retry=True)
        return [Product.from_dict(p) for p in self._items(response, 'products')]

    async def get_unapproved_products(self) -> List[Product]:
        response = await self._make_request('GET', '/api/products/unapproved', retry=True)
        return [Product.from_dict(p) for p in self._items(response, 'products')]

    async def get_product(self, product_id: str) -> Product:
        response = await self._make_request('GET', f'/api/products/approved/{product_id}', retry=True)
        return Product.from_dict(self._record(response, 'product'))

    async def get_unapproved_product(self, product_id: str) -> Product:
        response = await self._make_request('GET', f'/api/products/unapproved/{product_id}', retry=True)
        return Product.from_dict(self._record(response, 'product'))

    async def create_product(self, product: Product) -> Product:
        response = await self._make_request('POST', '/api/products', data=product.to_dict())
        return Product.from_dict(self._record(response, 'product'))

    async def update_product(self, product: Product) -> Product:
        response = await self._make_request('PUT', f'/api/products/{product.id}', data=product.to_dict())
        return Product.from_dict(self._record(response, 'product'))

    async def delete_product(self, product_id: str) -> bool:
        await self._make_request('DELETE', f'/api/products/{product_id}')
        return True

    # Categories

    async def get_categories(self) -> List[Category]:
        response = await self._make_request('GET', '/api/category/all', retry=True)
        return [Category.from_dict(c) for c in self._items(response, 'categories')]

    async def create_category(self, name: str) -> Category:
        response = await self._make_request('POST', '/api/category/create', data={'name': name})
        return Category.from_dict(self._record(response, 'category'))

    async def delete_category(self, category_id: str) -> bool:
        await self._make_request('DELETE', '/api/category/delete', params={'id': category_id})
        return True

    # Orders

    async def create_order(self, request: OrderRequest) -> Order:
        response = await self._make_request('POST', '/api/orders', data=request.to_dict())
        return Order.from_dict(self._record(response, 'order'))

    async def get_order(self, order_id: str) -> Order:
        response = await self._make_request('GET', f'/api/orders/{order_id}', retry=True)
        return Order.from_dict(self._record(response, 'order'))

    async def search_orders(
        self,
        status: Optional[OrderStatus] = None,
        query: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> OrdersPage:
        """
        Search orders, optionally filtered by status and free text.

        Returns:
            One page of results
        """
        params: Dict[str, Any] = {'page': page, 'pageSize': page_size}
        if status is not None:
            params['status'] = status.value
        if query:
            params['query'] = query
        response = await self._make_request('GET', '/api/orders', params=params, retry=True)
        return OrdersPage.from_json(response)

    async def get_orders_by_status(self, status: OrderStatus) -> List[Order]:
        return (await self.search_orders(status=status)).orders

    async def update_order_status(self, order_id: str, status: OrderStatus) -> Order:
        response = await self._make_request(
            'PATCH', f'/api/orders/{order_id}/status', data={'status': status.value}
        )
        return Order.from_dict(self._record(response, 'order'))

    # Users

    async def list_users(self, page_token: Optional[str] = None,
                         search: Optional[str] = None) -> UsersPage:
        params = {}
        if page_token:
            params['pageToken'] = page_token
        if search:
            params['search'] = search
        response = await self._make_request('GET', '/api/users', params=params or None, retry=True)
        return UsersPage.from_json(response)

    async def update_user_role(self, user_id: str, role: int) -> bool:
        await self._make_request('PATCH', f'/api/users/{user_id}/role', data={'role': role})
        return True
