"""
Core interfaces for Cap Gold.

This module defines the abstract interfaces that components must implement
to ensure consistent behavior across the system.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

from .models import TokenPair, TokenResponse


class ITokenSubscription(ABC):
    """A live stream of token values; the first item is the value at subscribe time."""

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[Optional[TokenPair]]:
        pass

    @abstractmethod
    async def __anext__(self) -> Optional[TokenPair]:
        pass

    @abstractmethod
    def close(self) -> None:
        """Stop receiving values. Pending iteration ends."""
        pass


class ITokenStorage(ABC):
    """
    Durable backing store for the session token pair.

    Only the token manager writes to it. Failures surface as StorageFailure.
    """

    @abstractmethod
    async def save(self, pair: TokenPair) -> None:
        """Persist the full pair, replacing any previous record."""
        pass

    @abstractmethod
    async def load(self) -> Optional[TokenPair]:
        """Return the stored pair, or None if absent or malformed."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove the stored pair."""
        pass

    @abstractmethod
    def observe(self) -> ITokenSubscription:
        """Subscribe to the stored value; emits the current value, then every change."""
        pass


class IRefreshClient(ABC):
    """Exchanges a refresh token for a new token response."""

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenResponse:
        """
        Raises:
            RefreshRejectedError: The server rejected the refresh token
            NetworkFailureError: Transport error, timeout, 5xx or malformed body
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class IConfigurationManager(ABC):
    """Interface for configuration management."""

    @abstractmethod
    def get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key."""
        pass

    @abstractmethod
    def set_config(self, key: str, value: Any) -> None:
        """Set configuration value."""
        pass

    @abstractmethod
    def reload_config(self) -> None:
        """Reload configuration from source."""
        pass
