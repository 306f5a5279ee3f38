"""
Tests for the HTTP layer: bearer attachment, proactive refresh, the single
refresh-and-retry after a 401, and the refresh call itself. Requests go to a
small aiohttp application standing in for the backend.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Set, Tuple

import pytest
from aiohttp import test_utils, web

from client.api_client import (
    APIClientError, CapGoldAPIClient, NotFoundError, RetryConfig, is_public_endpoint
)
from client.auth.refresh_client import TokenRefreshClient, extract_error_message
from client.auth.token_manager import TokenManager
from client.auth.token_storage import MemoryTokenStorage
from shared.exceptions import (
    AuthenticationFinalError, NetworkFailureError, RefreshRejectedError, SessionExpiredError
)
from shared.models import TokenResponse
from tests.conftest import make_pair

USER = {'id': 'user-1', 'email': 'owner@capgold.com', 'phoneNumber': '0123456789', 'role': 1}


class FakeBackend:
    """Records every request with its Authorization header."""

    def __init__(self):
        self.requests: List[Tuple[str, Optional[str]]] = []
        self.valid_tokens: Set[str] = {"access-token-1"}
        self.rotations: Dict[str, Tuple[str, str]] = {}
        self.refresh_status: Optional[int] = None
        self.refresh_body: Optional[str] = None
        self.reject_everything = False

        self.app = web.Application()
        self.app.router.add_get('/api/auth/me', self.me)
        self.app.router.add_post('/api/auth/refresh', self.refresh)
        self.app.router.add_post('/api/auth/signin/email', self.signin)
        self.app.router.add_post('/api/auth/signup/email', self.signup)
        self.app.router.add_get('/api/products/approved', self.products)
        self.app.router.add_get('/api/products/approved/{product_id}', self.product)
        self.app.router.add_get('/api/orders/{order_id}', self.order)

    def _record(self, request: web.Request) -> Optional[str]:
        header = request.headers.get('Authorization')
        self.requests.append((request.path, header))
        return header

    def headers_for(self, path: str) -> List[Optional[str]]:
        return [header for p, header in self.requests if p == path]

    def _authorized(self, header: Optional[str]) -> bool:
        if self.reject_everything or not header:
            return False
        return header.replace('Bearer ', '', 1) in self.valid_tokens

    async def me(self, request):
        if not self._authorized(self._record(request)):
            return web.json_response({'error': 'Invalid or expired token'}, status=401)
        return web.json_response(USER)

    async def refresh(self, request):
        self._record(request)
        if self.refresh_status is not None:
            return web.json_response({'error': 'Refresh unavailable'}, status=self.refresh_status)
        if self.refresh_body is not None:
            return web.Response(text=self.refresh_body, content_type='application/json')

        body = await request.json()
        rotation = self.rotations.pop(body.get('refreshToken'), None)
        if rotation is None:
            return web.json_response({'error': 'Refresh token already used'}, status=401)
        access, refresh = rotation
        self.valid_tokens.add(access)
        return web.json_response({'accessToken': access, 'refreshToken': refresh, 'expiresIn': 900})

    async def signin(self, request):
        self._record(request)
        return web.json_response({
            'user': USER,
            'tokens': {'accessToken': 'access-token-9', 'refreshToken': 'refresh-token-9',
                       'expiresIn': 900},
        })

    async def signup(self, request):
        self._record(request)
        return web.json_response({
            'user': USER,
            'tokens': {'accessToken': 'access-token-8', 'refreshToken': 'refresh-token-8',
                       'expiresIn': 900},
        }, status=201)

    async def products(self, request):
        if not self._authorized(self._record(request)):
            return web.json_response({'error': 'Invalid or expired token'}, status=401)
        return web.json_response({'products': [
            {'id': 'p1', 'name': 'Ring', 'price': 120.0, 'approved': True},
        ]})

    async def product(self, request):
        self._record(request)
        if request.match_info['product_id'] == 'listed':
            return web.json_response([{'id': 'listed', 'name': 'Chain'}])
        return web.json_response({'product': {'id': request.match_info['product_id'], 'name': 'Ring',
                                              'price': 120.0}})

    async def order(self, request):
        self._record(request)
        return web.json_response({'error': 'Order not found'}, status=404)


@asynccontextmanager
async def serving(backend: FakeBackend):
    server = test_utils.TestServer(backend.app)
    await server.start_server()
    try:
        yield str(server.make_url('')).rstrip('/')
    finally:
        await server.close()


@asynccontextmanager
async def client_for(url: str, clock, storage: Optional[MemoryTokenStorage] = None,
                     retry_config: Optional[RetryConfig] = None):
    storage = storage if storage is not None else MemoryTokenStorage(make_pair())
    manager = TokenManager(storage, TokenRefreshClient(url, timeout=5), clock=clock)
    await manager.load_initial()
    api = CapGoldAPIClient(url, manager, timeout=5,
                           retry_config=retry_config or RetryConfig(max_retries=0))
    try:
        yield api, manager, storage
    finally:
        await api.close()
        await manager.shutdown()


class TestProactiveRefresh:

    @pytest.mark.asyncio
    async def test_expired_access_token_is_renewed_before_sending(self, clock):
        backend = FakeBackend()
        backend.valid_tokens = {"access-token-2"}
        backend.rotations = {"refresh-token-1": ("access-token-2", "refresh-token-2")}

        async with serving(backend) as url:
            async with client_for(url, clock) as (api, manager, storage):
                clock.advance(901)
                user = await api.get_me()

                assert user.id == "user-1"
                assert backend.headers_for('/api/auth/me') == ["Bearer access-token-2"]
                assert backend.headers_for('/api/auth/refresh') == [None]
                stored = await storage.load()
                assert stored.access_token == "access-token-2"
                assert stored.refresh_token == "refresh-token-2"

    @pytest.mark.asyncio
    async def test_token_inside_margin_is_renewed(self, clock):
        backend = FakeBackend()
        backend.rotations = {"refresh-token-1": ("access-token-2", "refresh-token-2")}

        async with serving(backend) as url:
            async with client_for(url, clock) as (api, manager, storage):
                clock.advance(870)
                await api.get_me()

                assert backend.headers_for('/api/auth/me') == ["Bearer access-token-2"]


class TestUnauthorizedRetry:

    @pytest.mark.asyncio
    async def test_401_refreshes_once_and_retries_once(self, clock):
        backend = FakeBackend()
        backend.valid_tokens = set()
        backend.rotations = {"refresh-token-1": ("access-token-2", "refresh-token-2")}

        async with serving(backend) as url:
            async with client_for(url, clock) as (api, manager, storage):
                user = await api.get_me()

                assert user.email == "owner@capgold.com"
                assert backend.headers_for('/api/auth/me') == [
                    "Bearer access-token-1", "Bearer access-token-2"
                ]
                assert len(backend.headers_for('/api/auth/refresh')) == 1

    @pytest.mark.asyncio
    async def test_second_401_is_final(self, clock):
        backend = FakeBackend()
        backend.reject_everything = True
        backend.rotations = {"refresh-token-1": ("access-token-2", "refresh-token-2")}

        async with serving(backend) as url:
            async with client_for(url, clock) as (api, manager, storage):
                with pytest.raises(AuthenticationFinalError):
                    await api.get_me()

                assert len(backend.headers_for('/api/auth/me')) == 2
                assert len(backend.headers_for('/api/auth/refresh')) == 1
                assert manager.current_access_token() == "access-token-2"

    @pytest.mark.asyncio
    async def test_rejected_refresh_ends_session(self, clock):
        backend = FakeBackend()
        backend.valid_tokens = set()

        async with serving(backend) as url:
            async with client_for(url, clock) as (api, manager, storage):
                with pytest.raises(SessionExpiredError):
                    await api.get_me()

                assert manager.current_tokens is None
                assert await storage.load() is None

    @pytest.mark.asyncio
    async def test_refresh_server_error_keeps_session(self, clock):
        backend = FakeBackend()
        backend.valid_tokens = set()
        backend.refresh_status = 503

        async with serving(backend) as url:
            async with client_for(url, clock) as (api, manager, storage):
                with pytest.raises(NetworkFailureError):
                    await api.get_me()

                assert manager.current_access_token() == "access-token-1"
                assert (await storage.load()).refresh_token == "refresh-token-1"

    @pytest.mark.asyncio
    async def test_concurrent_401s_share_one_refresh(self, clock):
        backend = FakeBackend()
        backend.valid_tokens = set()
        backend.rotations = {"refresh-token-1": ("access-token-2", "refresh-token-2")}

        async with serving(backend) as url:
            async with client_for(url, clock) as (api, manager, storage):
                users = await asyncio.gather(*[api.get_me() for _ in range(5)])

                assert all(user.id == "user-1" for user in users)
                assert len(backend.headers_for('/api/auth/refresh')) == 1
                assert backend.headers_for('/api/auth/me').count("Bearer access-token-2") == 5


class TestPublicEndpoints:

    @pytest.mark.parametrize("endpoint, public", [
        ('/api/auth/signin/email', True),
        ('api/auth/signup/email', True),
        ('/api/auth/refresh?x=1', True),
        ('/api/auth/me', False),
        ('/api/products/approved', False),
    ])
    def test_is_public_endpoint(self, endpoint, public):
        assert is_public_endpoint(endpoint) is public

    @pytest.mark.asyncio
    async def test_signin_and_signup_carry_no_authorization(self, clock):
        backend = FakeBackend()

        async with serving(backend) as url:
            async with client_for(url, clock) as (api, manager, storage):
                signin = await api.sign_in_email("owner@capgold.com", "secret-pass")
                signup = await api.sign_up_email("new@capgold.com", "secret-pass", "0123456789")

                assert signin.tokens.access_token == "access-token-9"
                assert signup.user.id == "user-1"
                assert backend.headers_for('/api/auth/signin/email') == [None]
                assert backend.headers_for('/api/auth/signup/email') == [None]


class TestResponses:

    @pytest.mark.asyncio
    async def test_wrapped_list_is_unwrapped(self, clock):
        backend = FakeBackend()

        async with serving(backend) as url:
            async with client_for(url, clock) as (api, manager, storage):
                products = await api.get_approved_products()

                assert [p.id for p in products] == ["p1"]
                assert backend.headers_for('/api/products/approved') == ["Bearer access-token-1"]

    @pytest.mark.asyncio
    async def test_wrapped_object_is_unwrapped(self, clock):
        backend = FakeBackend()

        async with serving(backend) as url:
            async with client_for(url, clock) as (api, manager, storage):
                product = await api.get_product("p7")

                assert product.id == "p7"
                assert product.price == 120.0

    @pytest.mark.asyncio
    async def test_list_where_object_expected_is_client_error(self, clock):
        backend = FakeBackend()

        async with serving(backend) as url:
            async with client_for(url, clock) as (api, manager, storage):
                with pytest.raises(APIClientError) as exc_info:
                    await api.get_product("listed")

                assert "expected a product object" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_404_maps_to_not_found(self, clock):
        backend = FakeBackend()

        async with serving(backend) as url:
            async with client_for(url, clock) as (api, manager, storage):
                with pytest.raises(NotFoundError) as exc_info:
                    await api.get_order("missing")

                assert exc_info.value.status_code == 404
                assert "Order not found" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unreachable_server_is_network_failure(self, clock):
        backend = FakeBackend()
        async with serving(backend) as url:
            pass

        retry = RetryConfig(max_retries=2, base_delay=0, jitter=False)
        async with client_for(url, clock, retry_config=retry) as (api, manager, storage):
            with pytest.raises(NetworkFailureError):
                await api.get_me()

            assert manager.current_access_token() == "access-token-1"


class TestTokenRefreshClient:

    @pytest.mark.asyncio
    async def test_success(self):
        backend = FakeBackend()
        backend.rotations = {"refresh-token-1": ("access-token-2", "refresh-token-2")}

        async with serving(backend) as url:
            response = await TokenRefreshClient(url).refresh("refresh-token-1")

        assert response == TokenResponse("access-token-2", "refresh-token-2", 900)
        assert backend.headers_for('/api/auth/refresh') == [None]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejection(self, status):
        backend = FakeBackend()
        backend.refresh_status = status

        async with serving(backend) as url:
            with pytest.raises(RefreshRejectedError) as exc_info:
                await TokenRefreshClient(url).refresh("refresh-token-1")

        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 500, 502])
    async def test_other_statuses_are_network_failures(self, status):
        backend = FakeBackend()
        backend.refresh_status = status

        async with serving(backend) as url:
            with pytest.raises(NetworkFailureError):
                await TokenRefreshClient(url).refresh("refresh-token-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", ['{"accessToken": "a"}', 'not json', '[]'])
    async def test_malformed_body_is_network_failure(self, body):
        backend = FakeBackend()
        backend.refresh_body = body

        async with serving(backend) as url:
            with pytest.raises(NetworkFailureError):
                await TokenRefreshClient(url).refresh("refresh-token-1")

    @pytest.mark.asyncio
    async def test_connection_refused_is_network_failure(self):
        backend = FakeBackend()
        async with serving(backend) as url:
            pass

        with pytest.raises(NetworkFailureError):
            await TokenRefreshClient(url, timeout=5).refresh("refresh-token-1")

    def test_url(self):
        assert TokenRefreshClient("http://host:8080/").url == "http://host:8080/api/auth/refresh"


@pytest.mark.parametrize("body, message", [
    ('{"error": "Refresh token already used"}', "Refresh token already used"),
    ('{"detail": {"message": "nested"}}', "nested"),
    ('plain text failure', "plain text failure"),
    ('', None),
])
def test_extract_error_message(body, message):
    assert extract_error_message(body) == message
