"""
Keyed asyncio locks

Serializes credit mutations per account and workflow steps per job inside one
process. Row locks (SELECT ... FOR UPDATE) cover the cross-process case; this
registry keeps concurrent requests in the same process from racing for the
same row and makes lock waits bounded.

Lock order: a job lock is always taken before any account lock, and several
account locks are taken in sorted key order.
"""
import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

from app.core.exceptions import LockTimeoutError
from app.core.logging import get_logger

logger = get_logger(__name__)


def account_lock_key(account_id: int) -> str:
    return f"account:{account_id}"


def job_lock_key(job_id: int) -> str:
    return f"job:{job_id}"


class KeyedLockRegistry:
    """
    Lazily created asyncio.Lock per key.

    Each entry counts its holder and waiters and is dropped once the count is
    back to zero, so the registry only holds keys that are in use.
    """

    def __init__(self, default_timeout: float = 5.0):
        self.default_timeout = default_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        remaining = self._users.get(key, 0) - 1
        if remaining > 0:
            self._users[key] = remaining
        else:
            self._users.pop(key, None)
            self._locks.pop(key, None)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    async def acquire(self, key: str, timeout: float | None = None) -> asyncio.Lock:
        """Acquire the lock for ``key`` or raise LockTimeoutError"""
        wait = self.default_timeout if timeout is None else timeout
        lock = self._checkout(key)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=wait)
        except asyncio.TimeoutError:
            self._checkin(key)
            logger.warning(
                "Lock acquisition timed out",
                extra_data={"lock_key": key, "timeout_seconds": wait}
            )
            raise LockTimeoutError(key, wait)
        except BaseException:
            self._checkin(key)
            raise
        return lock

    def release(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and lock.locked():
            lock.release()
            self._checkin(key)

    @asynccontextmanager
    async def hold(self, key: str, timeout: float | None = None) -> AsyncIterator[None]:
        await self.acquire(key, timeout)
        try:
            yield
        finally:
            self.release(key)

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[str], timeout: float | None = None) -> AsyncIterator[None]:
        """Acquire several keys in sorted order, releasing all on failure"""
        acquired: list[str] = []
        try:
            for key in sorted(set(keys)):
                await self.acquire(key, timeout)
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self.release(key)

