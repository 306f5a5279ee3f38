"""
Shared fixtures for the Cap Gold test suite.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from client.auth.token_manager import TokenManager
from client.auth.token_storage import MemoryTokenStorage
from shared.exceptions import ErrorCode, NetworkFailureError, RefreshRejectedError, StorageFailure
from shared.interfaces import IRefreshClient
from shared.models import TokenPair, TokenResponse

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class FakeRefreshClient(IRefreshClient):
    """
    Scripted refresh client.

    Each call pops the next scripted result: a TokenResponse is returned, an
    exception is raised. When ``gate`` is set the call waits on it first.
    """

    def __init__(self, results: Optional[list] = None):
        self.results: list = list(results or [])
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.started: Optional[asyncio.Event] = None
        self.closed = False

    async def refresh(self, refresh_token: str) -> TokenResponse:
        self.calls.append(refresh_token)
        if self.started is not None:
            self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    async def close(self) -> None:
        self.closed = True


class FailingStorage(MemoryTokenStorage):
    """Memory storage whose writes fail on demand."""

    def __init__(self, initial: Optional[TokenPair] = None):
        super().__init__(initial)
        self.fail_writes = True
        self.fail_reads = False

    def _write_record(self, data: str) -> None:
        if self.fail_writes:
            raise StorageFailure("disk full", ErrorCode.STORAGE_WRITE_FAILED)
        super()._write_record(data)

    def _delete_record(self) -> None:
        if self.fail_writes:
            raise StorageFailure("disk full", ErrorCode.STORAGE_WRITE_FAILED)
        super()._delete_record()

    def _read_record(self) -> Optional[str]:
        if self.fail_reads:
            raise OSError("permission denied")
        return super()._read_record()


def make_pair(access: str = "access-token-1", refresh: str = "refresh-token-1",
              expires_in: float = 900, now: datetime = T0, user_id: str = "user-1") -> TokenPair:
    return TokenPair(
        access_token=access,
        refresh_token=refresh,
        access_token_expiry=now + timedelta(seconds=expires_in),
        user_id=user_id,
    )


def token_response(access: str = "access-token-2", refresh: str = "refresh-token-2",
                   expires_in: int = 900) -> TokenResponse:
    return TokenResponse(access_token=access, refresh_token=refresh, expires_in=expires_in)


def rejected(message: str = "Refresh token already used") -> RefreshRejectedError:
    return RefreshRejectedError(message, status_code=401)


def network_down(message: str = "Connection refused") -> NetworkFailureError:
    return NetworkFailureError(message, error_code=ErrorCode.NETWORK_CONNECTION_FAILED)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def refresh_client():
    return FakeRefreshClient()


@pytest.fixture
def storage():
    return MemoryTokenStorage()


@pytest.fixture
def manager(storage, refresh_client, clock):
    return TokenManager(storage, refresh_client, refresh_margin_seconds=60, clock=clock)
