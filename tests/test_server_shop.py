"""
Tests for the catalog, order and user management endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from server.api.main import create_app
from server.core.catalog_store import CatalogStore
from server.core.order_store import OrderStore
from server.core.token_service import TokenService
from server.core.user_store import UserStore
from shared.models import OrderStatus, UserRole
from tests.conftest import FakeClock
from tests.test_server_auth import bearer, make_config

ADMIN = ('admin@capgold.com', 'admin-pass')
CUSTOMER = ('buyer@capgold.com', 'buyer-pass')
OTHER = ('other@capgold.com', 'other-pass')

RING = {
    'name': 'Gold Ring',
    'price': 150.0,
    'unapprovedPrice': 175.0,
    'category': 'Rings',
    'weight': '4.2',
    'purity': '22K',
    'maxQuantity': 5,
}


@pytest.fixture
def user_store():
    store = UserStore()
    store.create_user(ADMIN[0], ADMIN[1], '0999999999', 'Shop Admin', role=UserRole.ADMIN.value)
    store.create_user(CUSTOMER[0], CUSTOMER[1], '0123456789', 'Gold Buyer')
    store.create_user(OTHER[0], OTHER[1], '0111111111', 'Other Buyer')
    return store


@pytest.fixture
def client(user_store):
    clock = FakeClock()
    app = create_app(
        make_config(),
        token_service=TokenService(jwt_secret='test-secret-key', clock=clock),
        user_store=user_store,
        catalog_store=CatalogStore(),
        order_store=OrderStore(clock=clock)
    )
    return TestClient(app)


def headers_for(client: TestClient, credentials) -> dict:
    response = client.post('/api/auth/signin/email',
                           json={'email': credentials[0], 'password': credentials[1]})
    assert response.status_code == 200
    return bearer(response.json()['tokens']['accessToken'])


@pytest.fixture
def admin(client):
    return headers_for(client, ADMIN)


@pytest.fixture
def customer(client):
    return headers_for(client, CUSTOMER)


def add_ring(client: TestClient, admin: dict) -> dict:
    response = client.post('/api/products', json=RING, headers=admin)
    assert response.status_code == 201
    return response.json()['product']


class TestProducts:

    def test_admin_creates_product_in_both_variants(self, client, admin, customer):
        ring = add_ring(client, admin)

        approved = client.get(f"/api/products/approved/{ring['id']}", headers=customer)
        unapproved = client.get(f"/api/products/unapproved/{ring['id']}", headers=customer)

        assert approved.json()['product']['price'] == 150.0
        assert unapproved.json()['product']['price'] == 175.0
        listed = client.get('/api/products/approved', headers=customer).json()['products']
        assert [p['name'] for p in listed] == ['Gold Ring']

    def test_customer_cannot_change_catalog(self, client, customer):
        response = client.post('/api/products', json=RING, headers=customer)

        assert response.status_code == 403
        assert response.json()['error'] == 'Admin access required'
        assert response.headers['X-Error-Code'] == 'AUTH_1003'

    def test_catalog_requires_sign_in(self, client):
        assert client.get('/api/products/approved').status_code == 401

    def test_unknown_product_is_404(self, client, customer):
        response = client.get('/api/products/approved/missing', headers=customer)

        assert response.status_code == 404
        assert response.json()['error'] == 'Product not found'

    def test_update_and_delete(self, client, admin, customer):
        ring = add_ring(client, admin)

        updated = client.put(f"/api/products/{ring['id']}",
                             json={**RING, 'price': 160.0, 'unapprovedPrice': 190.0}, headers=admin)
        assert updated.status_code == 200
        assert updated.json()['product']['price'] == 160.0
        unapproved = client.get(f"/api/products/unapproved/{ring['id']}", headers=customer)
        assert unapproved.json()['product']['price'] == 190.0

        assert client.delete(f"/api/products/{ring['id']}", headers=admin).status_code == 200
        assert client.delete(f"/api/products/{ring['id']}", headers=admin).status_code == 404

    def test_negative_price_is_400(self, client, admin):
        response = client.post('/api/products', json={**RING, 'price': -1}, headers=admin)
        assert response.status_code == 400


class TestCategories:

    def test_create_list_and_delete(self, client, admin, customer):
        created = client.post('/api/category/create', json={'name': ' Rings '}, headers=admin)
        client.post('/api/category/create', json={'name': 'Chains'}, headers=admin)

        assert created.status_code == 201
        assert created.json()['name'] == 'Rings'
        listed = client.get('/api/category/all', headers=customer).json()
        assert [c['name'] for c in listed] == ['Chains', 'Rings']

        deleted = client.delete('/api/category/delete', params={'id': created.json()['id']}, headers=admin)
        assert deleted.json() == {'deleted': True}

    def test_duplicate_name_conflicts(self, client, admin):
        client.post('/api/category/create', json={'name': 'Rings'}, headers=admin)
        response = client.post('/api/category/create', json={'name': 'rings'}, headers=admin)

        assert response.status_code == 409
        assert response.json()['error'] == 'Category exists'

    def test_delete_needs_known_id(self, client, admin):
        assert client.delete('/api/category/delete', headers=admin).status_code == 400
        assert client.delete('/api/category/delete', params={'id': 'nope'}, headers=admin).status_code == 404

    def test_customer_cannot_create(self, client, customer):
        response = client.post('/api/category/create', json={'name': 'Rings'}, headers=customer)
        assert response.status_code == 403


class TestOrders:

    def test_customer_pays_unapproved_price(self, client, admin, customer):
        ring = add_ring(client, admin)

        response = client.post('/api/orders', json={'productId': ring['id'], 'productQuantity': 2},
                               headers=customer)

        assert response.status_code == 201
        order = response.json()['order']
        assert order['totalAmount'] == 350.0
        assert order['status'] == 'PENDING'
        assert order['userMobile'] == '0123456789'
        assert order['userName'] == 'Gold Buyer'
        assert order['productName'] == 'Gold Ring'

    def test_approved_customer_pays_approved_price(self, client, admin, user_store):
        ring = add_ring(client, admin)
        buyer = user_store.authenticate(*CUSTOMER)
        user_store.set_role(buyer.id, UserRole.APPROVED.value)

        response = client.post('/api/orders', json={'productId': ring['id'], 'productQuantity': 2},
                               headers=headers_for(client, CUSTOMER))

        assert response.json()['order']['totalAmount'] == 300.0

    @pytest.mark.parametrize("quantity", [0, 6])
    def test_quantity_out_of_range_is_400(self, client, admin, customer, quantity):
        ring = add_ring(client, admin)
        response = client.post('/api/orders', json={'productId': ring['id'], 'productQuantity': quantity},
                               headers=customer)
        assert response.status_code == 400

    def test_unknown_product_is_404(self, client, customer):
        response = client.post('/api/orders', json={'productId': 'missing', 'productQuantity': 1},
                               headers=customer)
        assert response.status_code == 404

    def test_customers_only_see_their_own_orders(self, client, admin, customer):
        ring = add_ring(client, admin)
        other = headers_for(client, OTHER)
        mine = client.post('/api/orders', json={'productId': ring['id'], 'productQuantity': 1},
                           headers=customer).json()['order']
        client.post('/api/orders', json={'productId': ring['id'], 'productQuantity': 1}, headers=other)

        own = client.get('/api/orders', headers=customer).json()
        everything = client.get('/api/orders', headers=admin).json()

        assert [o['id'] for o in own['orders']] == [mine['id']]
        assert own['total'] == 1
        assert everything['total'] == 2
        assert client.get(f"/api/orders/{mine['id']}", headers=customer).status_code == 200
        assert client.get(f"/api/orders/{mine['id']}", headers=other).status_code == 404
        assert client.get(f"/api/orders/{mine['id']}", headers=admin).status_code == 200

    def test_search_pages_newest_first(self, client, admin, customer):
        ring = add_ring(client, admin)
        ids = [
            client.post('/api/orders', json={'productId': ring['id'], 'productQuantity': 1},
                        headers=customer).json()['order']['id']
            for _ in range(3)
        ]

        first = client.get('/api/orders', params={'page': 1, 'pageSize': 2}, headers=admin).json()
        second = client.get('/api/orders', params={'page': 2, 'pageSize': 2}, headers=admin).json()

        assert [o['id'] for o in first['orders']] == [ids[2], ids[1]]
        assert [o['id'] for o in second['orders']] == [ids[0]]
        assert first['total'] == 3
        assert first['pageSize'] == 2

    def test_status_filter_and_query(self, client, admin, customer):
        ring = add_ring(client, admin)
        order = client.post('/api/orders', json={'productId': ring['id'], 'productQuantity': 1},
                            headers=customer).json()['order']
        client.patch(f"/api/orders/{order['id']}/status", json={'status': 'confirmed'}, headers=admin)
        client.post('/api/orders', json={'productId': ring['id'], 'productQuantity': 1}, headers=customer)

        confirmed = client.get('/api/orders', params={'status': 'CONFIRMED'}, headers=admin).json()
        by_name = client.get('/api/orders', params={'query': 'gold ring'}, headers=admin).json()
        nobody = client.get('/api/orders', params={'query': 'silver'}, headers=admin).json()

        assert [o['id'] for o in confirmed['orders']] == [order['id']]
        assert by_name['total'] == 2
        assert nobody['orders'] == []

    def test_status_update_is_admin_only(self, client, admin, customer):
        ring = add_ring(client, admin)
        order = client.post('/api/orders', json={'productId': ring['id'], 'productQuantity': 1},
                            headers=customer).json()['order']

        denied = client.patch(f"/api/orders/{order['id']}/status", json={'status': 'CANCELLED'},
                              headers=customer)
        invalid = client.patch(f"/api/orders/{order['id']}/status", json={'status': 'LOST'}, headers=admin)
        updated = client.patch(f"/api/orders/{order['id']}/status", json={'status': 'shipped'}, headers=admin)

        assert denied.status_code == 403
        assert invalid.status_code == 400
        assert updated.json()['order']['status'] == OrderStatus.SHIPPED.value

    def test_unknown_order_status_update_is_404(self, client, admin):
        response = client.patch('/api/orders/missing/status', json={'status': 'SHIPPED'}, headers=admin)
        assert response.status_code == 404


class TestUsers:

    def test_admin_pages_through_users(self, client, admin):
        first = client.get('/api/users', params={'pageSize': 2}, headers=admin).json()
        second = client.get('/api/users', params={'pageSize': 2, 'pageToken': first['nextPageToken']},
                            headers=admin).json()

        assert [u['email'] for u in first['users']] == [ADMIN[0], CUSTOMER[0]]
        assert [u['email'] for u in second['users']] == [OTHER[0]]
        assert second['nextPageToken'] is None

    def test_search(self, client, admin):
        response = client.get('/api/users', params={'search': 'other'}, headers=admin).json()
        assert [u['email'] for u in response['users']] == [OTHER[0]]

    def test_bad_page_token_is_400(self, client, admin):
        response = client.get('/api/users', params={'pageToken': 'abc'}, headers=admin)
        assert response.status_code == 400

    def test_role_update(self, client, admin, user_store):
        buyer = user_store.authenticate(*CUSTOMER)

        response = client.patch(f'/api/users/{buyer.id}/role', json={'role': 1}, headers=admin)

        assert response.status_code == 200
        assert response.json()['role'] == UserRole.APPROVED.value
        assert user_store.get_user(buyer.id).role == UserRole.APPROVED.value

    def test_role_must_be_known(self, client, admin, user_store):
        buyer = user_store.authenticate(*CUSTOMER)
        response = client.patch(f'/api/users/{buyer.id}/role', json={'role': 7}, headers=admin)
        assert response.status_code == 400

    def test_unknown_user_is_404(self, client, admin):
        response = client.patch('/api/users/missing/role', json={'role': 1}, headers=admin)
        assert response.status_code == 404

    def test_customers_are_refused(self, client, customer, user_store):
        buyer = user_store.authenticate(*CUSTOMER)

        assert client.get('/api/users', headers=customer).status_code == 403
        promoted = client.patch(f'/api/users/{buyer.id}/role', json={'role': 0}, headers=customer)
        assert promoted.status_code == 403
        assert not user_store.get_user(buyer.id).is_admin
