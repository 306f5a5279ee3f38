"""
In-memory orders for the Cap Gold backend.

Orders are priced from the catalog when placed. Searches return one page of
results, newest first.
"""

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from shared.exceptions import ErrorCode, ResourceError, ValidationError
from shared.models import Order, OrderStatus, Product, User, utc_now

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 30
MAX_PAGE_SIZE = 100


def parse_status(value: str) -> OrderStatus:
    """Case-insensitive order status."""
    try:
        return OrderStatus(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown order status: {value}", field_name="status",
                              error_code=ErrorCode.VALIDATION_INVALID_FORMAT)


class OrderStore:
    """Thread-safe in-memory order book."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._lock = threading.Lock()
        self._orders: Dict[str, Order] = {}

    def _now_ms(self) -> int:
        return int(self._clock().timestamp() * 1000)

    def create_order(
        self,
        user: User,
        product: Product,
        quantity: int,
        address: str = "",
        phone_number: Optional[str] = None,
        name: Optional[str] = None
    ) -> Order:
        """
        Place an order for ``quantity`` units of ``product``.

        The total is the product price times the quantity. Contact details
        default to the user's profile.

        Raises:
            ValidationError: Quantity below one or above the product's limit
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", field_name="productQuantity",
                                  error_code=ErrorCode.VALIDATION_VALUE_OUT_OF_RANGE)
        if product.max_quantity and quantity > product.max_quantity:
            raise ValidationError(
                f"At most {product.max_quantity} of {product.name} can be ordered",
                field_name="productQuantity",
                error_code=ErrorCode.VALIDATION_VALUE_OUT_OF_RANGE
            )

        now_ms = self._now_ms()
        order = Order(
            id=uuid.uuid4().hex,
            user_id=user.id,
            product_id=product.id,
            quantity=quantity,
            total_price=round(product.price * quantity, 2),
            status=OrderStatus.PENDING,
            created_at=now_ms,
            updated_at=now_ms,
            address=address or "",
            phone_number=phone_number or user.phone_number or "",
            name=name or user.display_name or user.name or "",
            product_name=product.name,
        )
        with self._lock:
            self._orders[order.id] = order

        logger.info(f"Order {order.id} placed by user {user.id} for {quantity} x {product.id}")
        return order

    def get_order(self, order_id: str) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
        if order is None:
            raise ResourceError("Order not found")
        return order

    def search_orders(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        query: Optional[str] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE
    ) -> Tuple[List[Order], int]:
        """
        Find orders, newest first.

        Args:
            user_id: Only this user's orders, everyone's if omitted
            status: Only orders in this status
            query: Case-insensitive match on product name, customer name,
                mobile number or order ID
            page: 1-based page number; values below 1 mean the first page
            page_size: Results per page; values below 1 mean the default

        Returns:
            (orders on the page, total number of matches)
        """
        page = max(page, 1)
        page_size = DEFAULT_PAGE_SIZE if page_size < 1 else min(page_size, MAX_PAGE_SIZE)
        needle = (query or '').strip().lower()

        with self._lock:
            orders = list(reversed(self._orders.values()))

        matches = [
            order for order in orders
            if (user_id is None or order.user_id == user_id)
            and (status is None or order.status is status)
            and (not needle or any(needle in field.lower() for field in (
                order.product_name, order.name, order.phone_number, order.id
            )))
        ]
        start = (page - 1) * page_size
        return matches[start:start + page_size], len(matches)

    def update_status(self, order_id: str, status: OrderStatus) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise ResourceError("Order not found")
            order = replace(order, status=status, updated_at=self._now_ms())
            self._orders[order_id] = order

        logger.info(f"Order {order_id} is now {status.value}")
        return order

    def count(self) -> int:
        with self._lock:
            return len(self._orders)
