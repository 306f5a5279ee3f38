"""
Core services for the Cap Gold backend.

This module contains token issuing and rotation, the user account store, the
product catalog and the order book.
"""

from .catalog_store import CatalogStore
from .order_store import OrderStore
from .token_service import TokenService
from .user_store import UserStore

__all__ = [
    'CatalogStore',
    'OrderStore',
    'TokenService',
    'UserStore'
]
