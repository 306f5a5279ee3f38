"""
Order endpoints for Cap Gold.

Customers place orders and see their own; admins see every order and move
orders through their statuses.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import Field

from shared.exceptions import ResourceError
from shared.models import Order, User
from server.api.auth import CamelModel
from server.core.catalog_store import CatalogStore, variant_for_role
from server.core.order_store import DEFAULT_PAGE_SIZE, OrderStore, parse_status
from server.middleware.auth import (
    get_catalog_store, get_current_user, get_order_store, require_admin
)

logger = logging.getLogger(__name__)
router = APIRouter()


class CreateOrderRequest(CamelModel):
    product_id: str = Field(..., min_length=1, alias="productId")
    quantity: int = Field(..., ge=1, alias="productQuantity")
    address: str = ""
    user_mobile: Optional[str] = Field(None, alias="userMobile")
    user_name: Optional[str] = Field(None, alias="userName")


class StatusUpdateRequest(CamelModel):
    status: str = Field(..., min_length=1)


def _visible_order(order_store: OrderStore, order_id: str, user: User) -> Order:
    order = order_store.get_order(order_id)
    if order.user_id != user.id and not user.is_admin:
        # Other customers' orders look the same as missing ones
        raise ResourceError("Order not found")
    return order


@router.post("/orders", status_code=201)
async def create_order(
    body: CreateOrderRequest,
    current_user: User = Depends(get_current_user),
    catalog: CatalogStore = Depends(get_catalog_store),
    order_store: OrderStore = Depends(get_order_store)
):
    """Place an order, priced from the catalog variant the user buys from."""
    product = catalog.get_product(body.product_id, variant_for_role(current_user.role))
    order = order_store.create_order(
        current_user,
        product,
        body.quantity,
        address=body.address,
        phone_number=body.user_mobile,
        name=body.user_name
    )
    return {'order': order.to_dict()}


@router.get("/orders")
async def search_orders(
    page: int = Query(1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, alias="pageSize"),
    status: Optional[str] = Query(None),
    query: Optional[str] = Query(None),
    current_user: User = Depends(get_current_user),
    order_store: OrderStore = Depends(get_order_store)
):
    """
    Search orders.

    Admins search every order; everyone else only their own.
    """
    orders, total = order_store.search_orders(
        user_id=None if current_user.is_admin else current_user.id,
        status=parse_status(status) if status else None,
        query=query,
        page=page,
        page_size=page_size
    )
    return {
        'orders': [order.to_dict() for order in orders],
        'total': total,
        'page': max(page, 1),
        'pageSize': page_size,
    }


@router.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    current_user: User = Depends(get_current_user),
    order_store: OrderStore = Depends(get_order_store)
):
    return _visible_order(order_store, order_id, current_user).to_dict()


@router.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    body: StatusUpdateRequest,
    admin: User = Depends(require_admin),
    order_store: OrderStore = Depends(get_order_store)
):
    order = order_store.update_status(order_id, parse_status(body.status))
    logger.info(f"Admin {admin.id} set order {order_id} to {order.status.value}")
    return {'order': order.to_dict()}
