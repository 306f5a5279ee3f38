"""
Token Manager for the Cap Gold client.

Single source of truth for the session token pair. It persists the pair
through a token storage adapter, broadcasts every change on a token channel,
and runs at most one refresh at a time: concurrent callers, whether on the
same event loop, another loop or another thread, all share the result of the
one refresh in flight.

Refreshes and storage writes run on the manager's home loop, the loop that
first used it, so they outlive callers on short-lived loops and storage writes
happen one at a time.
"""

import asyncio
import concurrent.futures
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Set

from client.auth.token_channel import TokenCallback, TokenChannel, TokenSubscription
from shared.exceptions import NetworkFailureError, RefreshRejectedError, StorageFailure
from shared.interfaces import IRefreshClient, ITokenStorage
from shared.logging_config import AuditLogger
from shared.models import (
    RefreshResult, TokenPair, TokenResponse, token_fingerprint, utc_now
)

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN_SECONDS = 60


class TokenManager:
    """
    Owns the current token pair and its refresh.

    Created once by the application's composition root and passed to
    whatever issues authenticated requests.
    """

    def __init__(
        self,
        storage: ITokenStorage,
        refresh_client: IRefreshClient,
        refresh_margin_seconds: float = DEFAULT_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.storage = storage
        self.refresh_client = refresh_client
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self._clock = clock
        self._audit = audit_logger or AuditLogger()

        self._channel = TokenChannel()

        # Guards the refresh slot and the commit counter
        self._lock = threading.RLock()
        self._epoch = 0
        self._inflight: Optional[concurrent.futures.Future] = None
        self._refresh_tasks: Set[asyncio.Task] = set()

        # Loop that runs refreshes and storage writes
        self._home_loop: Optional[asyncio.AbstractEventLoop] = None
        self._write_lock: Optional[asyncio.Lock] = None
        self._persisted_epoch = 0

        self._initial_load: concurrent.futures.Future = concurrent.futures.Future()

        logger.info("Token manager initialized")

    # State access

    @property
    def current_tokens(self) -> Optional[TokenPair]:
        return self._channel.value

    def current_access_token(self) -> Optional[str]:
        """In-memory read of the access token. Never touches the network."""
        tokens = self._channel.value
        return tokens.access_token if tokens else None

    def current_user_id(self) -> Optional[str]:
        tokens = self._channel.value
        return tokens.user_id if tokens else None

    def is_authenticated(self) -> bool:
        return self._channel.value is not None

    def now(self) -> datetime:
        return self._clock()

    def needs_refresh(self) -> bool:
        """
        Check if the access token is expired or close to it.

        Returns:
            True if a token is held and it is within the refresh margin
        """
        tokens = self._channel.value
        if tokens is None:
            return False
        return tokens.is_expired(self._clock(), self.refresh_margin)

    # Observers

    def subscribe(self) -> TokenSubscription:
        """Async iterator yielding the current tokens, then every change."""
        return self._channel.subscribe()

    def add_token_callback(self, callback: TokenCallback, emit_current: bool = True) -> None:
        """
        Add callback for token changes.

        Args:
            callback: Function called with the new TokenPair, or None on sign-out
            emit_current: Call it once right away with the current value
        """
        self._channel.add_callback(callback, emit_current)

    def remove_token_callback(self, callback: TokenCallback) -> None:
        self._channel.remove_callback(callback)

    # Lifecycle

    async def load_initial(self) -> Optional[TokenPair]:
        """
        Adopt the persisted token pair, if there is a well-formed one.

        Storage failures degrade to "no session"; this never raises.

        Returns:
            The adopted pair, or None
        """
        self._home()
        pair = None
        try:
            pair = await self.storage.load()
        except StorageFailure as e:
            logger.warning(f"Could not load stored tokens: {e.message}")
            self._audit.log_storage_failure("load", e)
        except Exception as e:
            logger.error(f"Unexpected error loading stored tokens: {e}")

        if pair is not None:
            # A sign-in that finished first wins over the stored session
            if self._commit(pair, expected_epoch=0):
                with self._lock:
                    if self._persisted_epoch == 0:
                        self._persisted_epoch = 1
                logger.info(f"Restored session for user {pair.user_id}")
            else:
                pair = self._channel.value
        else:
            logger.info("No stored session found")

        if not self._initial_load.done():
            self._initial_load.set_result(pair)
        return pair

    async def await_initial_load(self) -> None:
        """Wait until load_initial() has completed."""
        await asyncio.wrap_future(self._initial_load)

    @property
    def initial_load_done(self) -> bool:
        return self._initial_load.done()

    async def set_tokens(self, pair: TokenPair) -> Optional[StorageFailure]:
        """
        Make ``pair`` the current session and persist it.

        Observers are notified before this returns. The in-memory value is
        updated even when persistence fails.

        Args:
            pair: The new token pair

        Returns:
            None on success, or the StorageFailure as a non-fatal warning
        """
        self._commit(pair)
        logger.debug(f"Tokens updated for user {pair.user_id} "
                     f"(access {token_fingerprint(pair.access_token)})")
        return await self._write_through()

    async def set_tokens_from_response(self, response: TokenResponse,
                                       user_id: str) -> Optional[StorageFailure]:
        """Store tokens from a sign-in or sign-up response."""
        pair = TokenPair.from_token_response(response, user_id, self._clock())
        return await self.set_tokens(pair)

    async def clear_tokens(self, reason: str = "sign_out") -> Optional[StorageFailure]:
        """
        End the session: empty the in-memory value, notify, clear storage.

        Returns:
            None on success, or the StorageFailure as a non-fatal warning
        """
        user_id = self.current_user_id()
        self._commit(None)
        logger.info(f"Session tokens cleared ({reason})")
        self._audit.log_sign_out(user_id, reason)
        return await self._write_through()

    def _commit(self, pair: Optional[TokenPair], expected_epoch: Optional[int] = None) -> bool:
        """Replace the current value and notify observers as one step."""
        with self._lock:
            if expected_epoch is not None and expected_epoch != self._epoch:
                return False
            self._epoch += 1
            self._channel.publish(pair)
            return True

    def _home(self) -> asyncio.AbstractEventLoop:
        """
        Loop that runs refreshes and storage writes.

        The first loop to use the manager becomes its home. A home loop that
        has stopped or closed is replaced by the caller's loop.
        """
        running = asyncio.get_running_loop()
        with self._lock:
            home = self._home_loop
            if home is None or home.is_closed() or (home is not running and not home.is_running()):
                if home is not None:
                    logger.debug("Home loop is gone, moving token manager to the current loop")
                self._home_loop = home = running
                self._write_lock = asyncio.Lock()
            return home

    async def _write_through(self) -> Optional[StorageFailure]:
        """Persist the latest committed value on the home loop."""
        home = self._home()
        if home is asyncio.get_running_loop():
            return await self._write_latest()
        future = asyncio.run_coroutine_threadsafe(self._write_latest(), home)
        return await asyncio.wrap_future(future)

    async def _write_latest(self) -> Optional[StorageFailure]:
        """
        Write the last committed value to storage.

        Writes hold the write lock for their whole duration and snapshot the
        value only once they own it, so a write that started earlier can never
        land after a later one. Writes are repeated until no newer commit landed
        meanwhile; a caller whose value was already written by another caller
        returns without touching storage.
        """
        async with self._write_lock:
            while True:
                with self._lock:
                    epoch = self._epoch
                    snapshot = self._channel.value
                    if epoch == self._persisted_epoch:
                        return None
                try:
                    if snapshot is None:
                        await self.storage.clear()
                    else:
                        await self.storage.save(snapshot)
                except StorageFailure as e:
                    logger.warning(f"Token persistence failed, session kept in memory: {e.message}")
                    self._audit.log_storage_failure("save" if snapshot else "clear", e)
                    return e
                with self._lock:
                    self._persisted_epoch = epoch

    # Refresh

    async def refresh_token(self) -> RefreshResult:
        """
        Refresh the session, sharing one in-flight refresh between all callers.

        Cancelling a caller does not cancel the refresh itself.

        Returns:
            RefreshResult classified as SUCCESS, NO_REFRESH_TOKEN, REJECTED
            or NETWORK_FAILURE
        """
        with self._lock:
            future = self._inflight
            if future is None:
                current = self._channel.value
                if current is None:
                    logger.debug("Refresh requested without a stored refresh token")
                    return RefreshResult.no_refresh_token()
                future = concurrent.futures.Future()
                self._inflight = future
                epoch = self._epoch
                start = True
            else:
                start = False

        if start:
            home = self._home()
            coro = self._run_refresh(future, current, epoch)
            if home is asyncio.get_running_loop():
                self._spawn_refresh(coro)
            else:
                home.call_soon_threadsafe(self._spawn_refresh, coro)
        else:
            logger.debug("Joining in-flight token refresh")

        return await asyncio.shield(asyncio.wrap_future(future))

    def _spawn_refresh(self, coro) -> None:
        """Start the refresh task. Runs on the home loop."""
        task = asyncio.get_running_loop().create_task(coro)
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _run_refresh(self, future: concurrent.futures.Future,
                           current: TokenPair, epoch: int) -> None:
        result: Optional[RefreshResult] = None
        error: Optional[BaseException] = None
        try:
            result = await self._refresh_once(current, epoch)
        except asyncio.CancelledError:
            result = RefreshResult.network_failure("Token refresh was cancelled")
            raise
        except Exception as e:
            logger.error(f"Unexpected error during token refresh: {e}")
            error = e
        finally:
            # Release the slot and publish the result together
            with self._lock:
                if self._inflight is future:
                    self._inflight = None
                if not future.done():
                    if error is not None:
                        future.set_exception(error)
                    else:
                        future.set_result(result)

    async def _refresh_once(self, current: TokenPair, epoch: int) -> RefreshResult:
        logger.info(f"Refreshing tokens for user {current.user_id}")
        try:
            response = await self.refresh_client.refresh(current.refresh_token)
        except RefreshRejectedError as e:
            self._audit.log_token_refresh("rejected", current.user_id, e.message)
            if self._commit(None, expected_epoch=epoch):
                logger.warning(f"Refresh token rejected, signing out: {e.message}")
                self._audit.log_sign_out(current.user_id, "refresh_rejected")
                await self._write_through()
                return RefreshResult.rejected(e.message)
            return self._superseded_result()
        except NetworkFailureError as e:
            logger.warning(f"Token refresh failed, keeping stored tokens: {e.message}")
            self._audit.log_token_refresh("network_failure", current.user_id, e.message)
            return RefreshResult.network_failure(e.message)

        pair = TokenPair.from_token_response(response, current.user_id, self._clock())
        if not self._commit(pair, expected_epoch=epoch):
            logger.info("Session changed during refresh, discarding refreshed tokens")
            return self._superseded_result()

        await self._write_through()
        self._audit.log_token_refresh("success", pair.user_id)
        logger.info(f"Token refresh successful for user {pair.user_id}")
        return RefreshResult.success(pair)

    def _superseded_result(self) -> RefreshResult:
        """Result for a refresh whose session was replaced or cleared meanwhile."""
        latest = self._channel.value
        if latest is None:
            return RefreshResult.no_refresh_token("Session was cleared during refresh")
        return RefreshResult.success(latest)

    @property
    def refresh_in_progress(self) -> bool:
        with self._lock:
            return self._inflight is not None

    async def get_valid_access_token(self) -> Optional[str]:
        """
        Access token to attach to an outgoing request.

        Refreshes first when the token is expired or within the refresh margin.

        Returns:
            The access token, or None when signed out

        Raises:
            NoRefreshTokenError, RefreshRejectedError, NetworkFailureError:
                When the needed refresh fails
        """
        tokens = self._channel.value
        if tokens is None:
            return None
        if not tokens.is_expired(self._clock(), self.refresh_margin):
            return tokens.access_token

        logger.debug("Access token expired or about to expire, refreshing before request")
        result = await self.refresh_token()
        return result.raise_for_outcome().access_token

    async def shutdown(self) -> None:
        """Wait for any in-flight refresh, then close observers."""
        logger.info("Shutting down token manager")

        with self._lock:
            future = self._inflight
        if future is not None:
            try:
                await asyncio.wrap_future(future)
            except Exception as e:
                logger.debug(f"In-flight refresh ended with error during shutdown: {e}")

        self._channel.close()
        await self.refresh_client.close()
