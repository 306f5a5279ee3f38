"""
Core data models for Cap Gold.

This module defines the data structures shared by the client and the auth
backend: the session token pair, token responses, users, catalog items and
orders. JSON keys on the wire are camelCase; attributes are snake_case.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any
from enum import Enum

from .exceptions import NoRefreshTokenError, RefreshRejectedError, NetworkFailureError


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


@dataclass(frozen=True)
class TokenResponse:
    """Token material returned by sign-in, sign-up and refresh."""
    access_token: str
    refresh_token: str
    expires_in: int

    @classmethod
    def from_json(cls, data: Any) -> 'TokenResponse':
        """
        Parse a token response body.

        Accepts the flat shape ``{accessToken, refreshToken, expiresIn}`` and
        the wrapped shape ``{tokens: {...}}``.

        Raises:
            ValueError: If the body does not contain a complete token response
        """
        if not isinstance(data, dict):
            raise ValueError("Token response is not a JSON object")
        if 'accessToken' not in data and isinstance(data.get('tokens'), dict):
            data = data['tokens']

        access_token = data.get('accessToken')
        refresh_token = data.get('refreshToken')
        expires_in = data.get('expiresIn')

        if not isinstance(access_token, str) or not access_token:
            raise ValueError("Token response is missing accessToken")
        if not isinstance(refresh_token, str) or not refresh_token:
            raise ValueError("Token response is missing refreshToken")
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)) or expires_in < 0:
            raise ValueError("Token response has an invalid expiresIn")

        return cls(access_token=access_token, refresh_token=refresh_token, expires_in=int(expires_in))

    def to_json(self) -> Dict[str, Any]:
        return {
            'accessToken': self.access_token,
            'refreshToken': self.refresh_token,
            'expiresIn': self.expires_in,
        }


@dataclass(frozen=True)
class TokenPair:
    """
    The unit of session state.

    All four fields are persisted and observed together. A record missing any
    of them is treated as absent.
    """
    access_token: str
    refresh_token: str
    access_token_expiry: datetime
    user_id: str

    def __post_init__(self):
        if not self.access_token:
            raise ValueError("Access token cannot be empty")
        if not self.refresh_token:
            raise ValueError("Refresh token cannot be empty")
        if not self.user_id:
            raise ValueError("User ID cannot be empty")
        if self.access_token_expiry.tzinfo is None:
            raise ValueError("Access token expiry must be timezone-aware")

    @classmethod
    def from_token_response(cls, response: TokenResponse, user_id: str,
                            now: Optional[datetime] = None) -> 'TokenPair':
        """Build a pair whose expiry is ``now + expires_in``."""
        issued_at = now or utc_now()
        return cls(
            access_token=response.access_token,
            refresh_token=response.refresh_token,
            access_token_expiry=issued_at + timedelta(seconds=response.expires_in),
            user_id=user_id,
        )

    def is_expired(self, now: Optional[datetime] = None,
                   margin: timedelta = timedelta(0)) -> bool:
        """True if the access token is expired or within ``margin`` of expiry."""
        current = now or utc_now()
        return self.access_token_expiry - current <= margin

    def to_dict(self) -> Dict[str, Any]:
        return {
            'accessToken': self.access_token,
            'refreshToken': self.refresh_token,
            'accessTokenExpiry': self.access_token_expiry.isoformat(),
            'userId': self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional['TokenPair']:
        """Rebuild a persisted pair, or return None if the record is incomplete."""
        if not isinstance(data, dict):
            return None

        access_token = data.get('accessToken')
        refresh_token = data.get('refreshToken')
        user_id = data.get('userId')
        expiry = _parse_timestamp(data.get('accessTokenExpiry'))

        if not all(isinstance(v, str) and v for v in (access_token, refresh_token, user_id)):
            return None
        if expiry is None:
            return None

        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expiry=expiry,
            user_id=user_id,
        )

    def __repr__(self) -> str:
        return (f"TokenPair(access_token='{token_fingerprint(self.access_token)}', "
                f"refresh_token='{token_fingerprint(self.refresh_token)}', "
                f"access_token_expiry={self.access_token_expiry.isoformat()}, "
                f"user_id='{self.user_id}')")


def token_fingerprint(token: Optional[str]) -> str:
    """Short, log-safe identifier for a token."""
    if not token:
        return "<none>"
    if len(token) <= 8:
        return "****"
    return f"{token[:4]}...{token[-4:]}"


class RefreshOutcome(Enum):
    """Classified result of a token refresh."""
    SUCCESS = "success"
    NO_REFRESH_TOKEN = "no_refresh_token"
    REJECTED = "rejected"
    NETWORK_FAILURE = "network_failure"


@dataclass(frozen=True)
class RefreshResult:
    """Result shared by every caller awaiting the same refresh."""
    outcome: RefreshOutcome
    tokens: Optional[TokenPair] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is RefreshOutcome.SUCCESS

    @property
    def requires_sign_out(self) -> bool:
        return self.outcome in (RefreshOutcome.NO_REFRESH_TOKEN, RefreshOutcome.REJECTED)

    @classmethod
    def success(cls, tokens: TokenPair) -> 'RefreshResult':
        return cls(RefreshOutcome.SUCCESS, tokens=tokens)

    @classmethod
    def no_refresh_token(cls, message: str = "No refresh token available") -> 'RefreshResult':
        return cls(RefreshOutcome.NO_REFRESH_TOKEN, message=message)

    @classmethod
    def rejected(cls, message: str = "Refresh token rejected") -> 'RefreshResult':
        return cls(RefreshOutcome.REJECTED, message=message)

    @classmethod
    def network_failure(cls, message: str = "Network failure") -> 'RefreshResult':
        return cls(RefreshOutcome.NETWORK_FAILURE, message=message)

    def raise_for_outcome(self) -> TokenPair:
        """Return the new tokens, or raise the exception matching the failure."""
        if self.outcome is RefreshOutcome.SUCCESS:
            return self.tokens
        if self.outcome is RefreshOutcome.NO_REFRESH_TOKEN:
            raise NoRefreshTokenError(self.message or "No refresh token available")
        if self.outcome is RefreshOutcome.REJECTED:
            raise RefreshRejectedError(self.message or "Refresh token rejected")
        raise NetworkFailureError(self.message or "Network failure")


class UserRole(Enum):
    """Numeric user roles used by the backend."""
    ADMIN = 0
    APPROVED = 1
    UNAPPROVED = 2
    CUSTOMER = 3


@dataclass
class User:
    """Account details returned by the auth endpoints."""
    id: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    is_email_verified: bool = False
    name: Optional[str] = None
    role: int = UserRole.CUSTOMER.value
    shop_name: Optional[str] = None
    created_at: int = 0
    last_login: int = 0

    def __post_init__(self):
        if not self.id:
            raise ValueError("User ID cannot be empty")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        return cls(
            id=str(data.get('id') or data.get('uid') or ''),
            email=data.get('email'),
            phone_number=data.get('phoneNumber'),
            display_name=data.get('displayName'),
            photo_url=data.get('photoUrl'),
            is_email_verified=bool(data.get('isEmailVerified', False)),
            name=data.get('name'),
            role=int(data.get('role', UserRole.CUSTOMER.value)),
            shop_name=data.get('shopName'),
            created_at=int(data.get('createdAt') or 0),
            last_login=int(data.get('lastLogin') or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'email': self.email,
            'phoneNumber': self.phone_number,
            'displayName': self.display_name,
            'photoUrl': self.photo_url,
            'isEmailVerified': self.is_email_verified,
            'name': self.name,
            'role': self.role,
            'shopName': self.shop_name,
            'createdAt': self.created_at,
            'lastLogin': self.last_login,
        }


@dataclass
class AuthResponse:
    """User plus issued tokens."""
    user: User
    tokens: TokenResponse

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'AuthResponse':
        if not isinstance(data, dict) or not isinstance(data.get('user'), dict):
            raise ValueError("Auth response is missing user")
        return cls(user=User.from_dict(data['user']), tokens=TokenResponse.from_json(data))


@dataclass
class Category:
    """Product category."""
    id: str
    name: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Category':
        return cls(id=str(data.get('id', '')), name=data.get('name', ''))


@dataclass
class Product:
    """Catalog item."""
    id: str
    name: str
    price: float = 0.0
    image_url: str = ""
    category: str = ""
    description: str = ""
    weight: str = ""
    purity: str = ""
    dimension: str = ""
    max_quantity: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Product':
        return cls(
            id=str(data.get('id', '')),
            name=data.get('name', ''),
            price=float(data.get('price') or 0.0),
            image_url=data.get('imageUrl', ''),
            category=data.get('category', ''),
            description=data.get('description', ''),
            weight=str(data.get('weight', '')),
            purity=str(data.get('purity', '')),
            dimension=str(data.get('dimension', '')),
            max_quantity=int(data.get('maxQuantity') or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'price': self.price,
            'imageUrl': self.image_url,
            'category': self.category,
            'description': self.description,
            'weight': self.weight,
            'purity': self.purity,
            'dimension': self.dimension,
            'maxQuantity': self.max_quantity,
        }


class OrderStatus(Enum):
    """Order lifecycle states."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


@dataclass
class Order:
    """Server-side order as deserialized by the client."""
    id: str
    user_id: str
    product_id: str
    quantity: int
    total_price: float
    status: OrderStatus = OrderStatus.PENDING
    created_at: int = 0
    updated_at: int = 0
    address: str = ""
    phone_number: str = ""
    name: str = ""
    product_name: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Order':
        # Create and status-update responses wrap the order
        if isinstance(data.get('order'), dict):
            data = data['order']
        return cls(
            id=str(data.get('id', '')),
            user_id=str(data.get('userId', '')),
            product_id=str(data.get('productId', '')),
            quantity=int(data.get('productQuantity') or 0),
            total_price=float(data.get('totalAmount') or 0.0),
            status=OrderStatus(str(data.get('status', 'PENDING')).upper()),
            created_at=int(data.get('createdAt') or 0),
            updated_at=int(data.get('updatedAt') or 0),
            address=data.get('address') or "",
            phone_number=data.get('userMobile') or "",
            name=data.get('userName') or "",
            product_name=data.get('productName') or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'userId': self.user_id,
            'productId': self.product_id,
            'productName': self.product_name,
            'productQuantity': self.quantity,
            'totalAmount': self.total_price,
            'status': self.status.value,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
            'address': self.address,
            'userMobile': self.phone_number,
            'userName': self.name,
        }


@dataclass
class OrderRequest:
    """Payload for placing an order."""
    product_id: str
    quantity: int
    address: str = ""
    phone_number: str = ""
    name: str = ""
    product_name: str = ""

    def __post_init__(self):
        if not self.product_id:
            raise ValueError("Product ID cannot be empty")
        if self.quantity <= 0:
            raise ValueError("Quantity must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'productId': self.product_id,
            'productQuantity': self.quantity,
            'address': self.address,
            'userMobile': self.phone_number,
            'userName': self.name,
            'productName': self.product_name,
        }


@dataclass
class OrdersPage:
    """One page of an order search."""
    orders: List[Order] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20

    @classmethod
    def from_json(cls, data: Any) -> 'OrdersPage':
        if isinstance(data, list):
            orders = [Order.from_dict(o) for o in data]
            return cls(orders=orders, total=len(orders), page=1, page_size=len(orders))
        orders = [Order.from_dict(o) for o in data.get('orders', [])]
        return cls(
            orders=orders,
            total=int(data.get('total', len(orders))),
            page=int(data.get('page', 1)),
            page_size=int(data.get('pageSize', len(orders))),
        )


@dataclass
class UsersPage:
    """One page of the admin user list."""
    users: List[User] = field(default_factory=list)
    next_page_token: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'UsersPage':
        return cls(
            users=[User.from_dict(u) for u in data.get('users', [])],
            next_page_token=data.get('nextPageToken'),
        )
