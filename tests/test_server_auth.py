"""
Tests for the auth server endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from server.api.main import create_app
from server.config import AppConfig, SecurityConfig, ServerConfig
from server.core.token_service import TokenService
from server.core.user_store import UserStore
from shared.exceptions import AuthenticationError, RefreshRejectedError
from tests.conftest import FakeClock

SIGNUP = {
    'email': 'owner@capgold.com',
    'password': 'secret-pass',
    'phoneNumber': '0123456789',
    'displayName': 'Gold Owner',
}


def make_config() -> AppConfig:
    return AppConfig(
        server=ServerConfig(
            host='127.0.0.1',
            port=8080,
            environment='testing',
            log_level='INFO',
            log_file=None,
            cors_origins=['*'],
            structured_logging=False
        ),
        security=SecurityConfig(
            jwt_secret_key='test-secret-key',
            jwt_algorithm='HS256',
            access_token_minutes=15,
            refresh_token_days=7,
            min_password_length=6
        )
    )


@pytest.fixture
def server_clock():
    return FakeClock()


@pytest.fixture
def token_service(server_clock):
    return TokenService(jwt_secret='test-secret-key', clock=server_clock)


@pytest.fixture
def client(token_service):
    app = create_app(make_config(), token_service=token_service, user_store=UserStore())
    return TestClient(app)


def bearer(token: str) -> dict:
    return {'Authorization': f'Bearer {token}'}


def sign_up(client: TestClient) -> dict:
    response = client.post('/api/auth/signup/email', json=SIGNUP)
    assert response.status_code == 201
    return response.json()


class TestSignUpAndSignIn:

    def test_signup_returns_user_and_tokens(self, client):
        body = sign_up(client)

        assert body['user']['email'] == 'owner@capgold.com'
        assert body['user']['phoneNumber'] == '0123456789'
        assert body['tokens']['expiresIn'] == 900
        assert body['tokens']['accessToken']
        assert body['tokens']['refreshToken']

    def test_duplicate_signup_conflicts(self, client):
        sign_up(client)
        response = client.post('/api/auth/signup/email', json=SIGNUP)

        assert response.status_code == 409
        assert 'already exists' in response.json()['error']

    def test_signup_validation_error_is_400(self, client):
        response = client.post('/api/auth/signup/email', json={**SIGNUP, 'phoneNumber': '123'})
        assert response.status_code == 400
        assert 'error' in response.json()

    def test_missing_field_is_400(self, client):
        response = client.post('/api/auth/signin/email', json={'email': 'owner@capgold.com'})
        assert response.status_code == 400
        assert 'password' in response.json()['error']

    @pytest.mark.parametrize("identifier", ['owner@capgold.com', 'OWNER@capgold.com', '0123456789'])
    def test_signin_with_email_or_phone(self, client, identifier):
        sign_up(client)
        response = client.post('/api/auth/signin/email',
                               json={'email': identifier, 'password': 'secret-pass'})

        assert response.status_code == 200
        assert response.json()['user']['displayName'] == 'Gold Owner'

    def test_wrong_password_is_401(self, client):
        sign_up(client)
        response = client.post('/api/auth/signin/email',
                               json={'email': 'owner@capgold.com', 'password': 'wrong-pass'})

        assert response.status_code == 401
        assert response.json()['error'] == 'Invalid email or password'


class TestMe:

    def test_me_returns_bare_user(self, client):
        tokens = sign_up(client)['tokens']
        response = client.get('/api/auth/me', headers=bearer(tokens['accessToken']))

        assert response.status_code == 200
        assert response.json()['email'] == 'owner@capgold.com'
        assert response.headers['X-Content-Type-Options'] == 'nosniff'

    def test_missing_token_is_401_with_challenge(self, client):
        response = client.get('/api/auth/me')

        assert response.status_code == 401
        assert response.headers['WWW-Authenticate'] == 'Bearer'
        assert response.json() == {'error': 'Authentication required'}

    def test_expired_access_token_is_401(self, client, server_clock):
        tokens = sign_up(client)['tokens']
        server_clock.advance(901)

        response = client.get('/api/auth/me', headers=bearer(tokens['accessToken']))

        assert response.status_code == 401
        assert 'expired' in response.json()['error']

    def test_refresh_token_is_not_an_access_token(self, client):
        tokens = sign_up(client)['tokens']
        response = client.get('/api/auth/me', headers=bearer(tokens['refreshToken']))
        assert response.status_code == 401


class TestRefresh:

    def test_rotation_issues_new_pair(self, client):
        tokens = sign_up(client)['tokens']

        response = client.post('/api/auth/refresh', json={'refreshToken': tokens['refreshToken']})

        assert response.status_code == 200
        rotated = response.json()
        assert set(rotated) == {'accessToken', 'refreshToken', 'expiresIn'}
        assert rotated['refreshToken'] != tokens['refreshToken']
        assert client.get('/api/auth/me', headers=bearer(rotated['accessToken'])).status_code == 200

    def test_works_after_access_token_expired(self, client, server_clock):
        tokens = sign_up(client)['tokens']
        server_clock.advance(901)

        response = client.post('/api/auth/refresh', json={'refreshToken': tokens['refreshToken']})

        assert response.status_code == 200

    def test_reuse_is_rejected_and_revokes_family(self, client):
        tokens = sign_up(client)['tokens']
        rotated = client.post('/api/auth/refresh',
                              json={'refreshToken': tokens['refreshToken']}).json()

        reused = client.post('/api/auth/refresh', json={'refreshToken': tokens['refreshToken']})
        assert reused.status_code == 401
        assert reused.json()['error'] == 'Refresh token already used'

        revoked = client.post('/api/auth/refresh', json={'refreshToken': rotated['refreshToken']})
        assert revoked.status_code == 401

    def test_garbage_token_is_401(self, client):
        response = client.post('/api/auth/refresh', json={'refreshToken': 'not-a-jwt'})
        assert response.status_code == 401
        assert 'error' in response.json()

    def test_empty_token_is_400(self, client):
        response = client.post('/api/auth/refresh', json={'refreshToken': ''})
        assert response.status_code == 400


class TestProfile:

    def test_update_requires_current_password(self, client):
        tokens = sign_up(client)['tokens']
        headers = bearer(tokens['accessToken'])

        missing = client.put('/api/auth/me', json={'shopName': 'Gold Shop'}, headers=headers)
        wrong = client.put('/api/auth/me', json={'shopName': 'Gold Shop', 'currentPassword': 'nope-nope'},
                           headers=headers)

        assert missing.status_code == 400
        assert wrong.status_code == 400
        assert wrong.json()['error'] == 'Current password is incorrect'

    def test_update_changes_fields(self, client):
        tokens = sign_up(client)['tokens']
        response = client.put(
            '/api/auth/me',
            json={'shopName': 'Gold Shop', 'displayName': 'New Name', 'currentPassword': 'secret-pass'},
            headers=bearer(tokens['accessToken'])
        )

        assert response.status_code == 200
        assert response.json()['shopName'] == 'Gold Shop'
        assert response.json()['displayName'] == 'New Name'

    def test_change_password(self, client):
        tokens = sign_up(client)['tokens']
        response = client.post(
            '/api/auth/password/change',
            json={'currentPassword': 'secret-pass', 'newPassword': 'better-pass'},
            headers=bearer(tokens['accessToken'])
        )
        assert response.status_code == 200

        old = client.post('/api/auth/signin/email',
                          json={'email': 'owner@capgold.com', 'password': 'secret-pass'})
        new = client.post('/api/auth/signin/email',
                          json={'email': 'owner@capgold.com', 'password': 'better-pass'})
        assert old.status_code == 401
        assert new.status_code == 200


def test_health(client):
    response = client.get('/health')
    assert response.status_code == 200
    assert response.json()['status'] == 'healthy'


class TestTokenService:

    def test_verify_returns_subject(self, token_service):
        tokens = token_service.issue_tokens('user-1')
        assert token_service.verify_access_token(tokens.access_token) == 'user-1'

    def test_other_secret_is_rejected(self, token_service, server_clock):
        other = TokenService(jwt_secret='another-secret', clock=server_clock)
        tokens = other.issue_tokens('user-1')

        with pytest.raises(AuthenticationError):
            token_service.verify_access_token(tokens.access_token)

    def test_expired_refresh_token_is_rejected(self, token_service, server_clock):
        tokens = token_service.issue_tokens('user-1')
        server_clock.advance(8 * 24 * 3600)

        with pytest.raises(RefreshRejectedError):
            token_service.rotate(tokens.refresh_token)

    def test_rotate_consumes_token(self, token_service):
        tokens = token_service.issue_tokens('user-1')
        user_id, rotated = token_service.rotate(tokens.refresh_token)

        assert user_id == 'user-1'
        assert rotated.expires_in == 900
        with pytest.raises(RefreshRejectedError):
            token_service.rotate(tokens.refresh_token)
