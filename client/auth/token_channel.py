"""
Publish/subscribe channel for the current session tokens.

The channel holds the latest value. Publishing replaces it and hands it to
every subscriber inside one lock, so each subscriber sees values in commit
order and never sees an older value after a newer one. Subscribers may
consume from any thread or event loop.
"""

import asyncio
import logging
import threading
from collections import deque
from typing import Callable, List, Optional

from shared.interfaces import ITokenSubscription
from shared.models import TokenPair

logger = logging.getLogger(__name__)

TokenCallback = Callable[[Optional[TokenPair]], None]


class TokenSubscription(ITokenSubscription):
    """
    Async iterator over token values.

    The first value is the one current at subscribe time. Values are buffered
    until consumed; nothing is dropped or reordered.
    """

    def __init__(self, channel: 'TokenChannel'):
        self._channel = channel
        self._lock = threading.Lock()
        self._pending: deque = deque()
        self._waiter: Optional[asyncio.Future] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, value: Optional[TokenPair]) -> None:
        with self._lock:
            if self._closed:
                return
            self._pending.append(value)
            waiter = self._waiter
        if waiter is not None:
            self._wake(waiter)

    @staticmethod
    def _wake(waiter: asyncio.Future) -> None:
        def _release():
            if not waiter.done():
                waiter.set_result(None)

        try:
            waiter.get_loop().call_soon_threadsafe(_release)
        except RuntimeError:
            # Consumer loop already closed
            pass

    def drain(self) -> List[Optional[TokenPair]]:
        """Return and remove every buffered value without waiting."""
        with self._lock:
            values = list(self._pending)
            self._pending.clear()
        return values

    def __aiter__(self) -> 'TokenSubscription':
        return self

    async def __anext__(self) -> Optional[TokenPair]:
        while True:
            with self._lock:
                if self._pending:
                    return self._pending.popleft()
                if self._closed:
                    raise StopAsyncIteration
                waiter = asyncio.get_running_loop().create_future()
                self._waiter = waiter
            try:
                await waiter
            finally:
                with self._lock:
                    if self._waiter is waiter:
                        self._waiter = None

    async def next(self, timeout: Optional[float] = None) -> Optional[TokenPair]:
        """Wait for the next value, optionally bounded by ``timeout`` seconds."""
        return await asyncio.wait_for(self.__anext__(), timeout)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._pending.clear()
            waiter = self._waiter
        self._channel._unsubscribe(self)
        if waiter is not None:
            self._wake(waiter)


class TokenChannel:
    """
    Holds the current token value and fans changes out to observers.

    Callbacks run synchronously inside the publish lock, so they must be
    quick and must not publish to the same channel.
    """

    def __init__(self, initial: Optional[TokenPair] = None):
        self._lock = threading.RLock()
        self._value = initial
        self._subscriptions: List[TokenSubscription] = []
        self._callbacks: List[TokenCallback] = []

    @property
    def value(self) -> Optional[TokenPair]:
        with self._lock:
            return self._value

    def publish(self, value: Optional[TokenPair]) -> bool:
        """
        Replace the current value and notify observers.

        Returns:
            False if the value was unchanged and nothing was published
        """
        with self._lock:
            if value == self._value:
                return False
            self._value = value
            for subscription in list(self._subscriptions):
                subscription._push(value)
            for callback in list(self._callbacks):
                try:
                    callback(value)
                except Exception as e:
                    logger.error(f"Error in token callback: {e}")
            return True

    def subscribe(self) -> TokenSubscription:
        subscription = TokenSubscription(self)
        with self._lock:
            subscription._push(self._value)
            self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: TokenSubscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def add_callback(self, callback: TokenCallback, emit_current: bool = True) -> None:
        """
        Register a synchronous observer.

        Args:
            callback: Called with the new value on every change
            emit_current: Also call it immediately with the current value
        """
        with self._lock:
            self._callbacks.append(callback)
            if emit_current:
                try:
                    callback(self._value)
                except Exception as e:
                    logger.error(f"Error in token callback: {e}")

    def remove_callback(self, callback: TokenCallback) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions) + len(self._callbacks)

    def close(self) -> None:
        """Close every open subscription and drop callbacks."""
        with self._lock:
            subscriptions = list(self._subscriptions)
            self._callbacks.clear()
        for subscription in subscriptions:
            subscription.close()
