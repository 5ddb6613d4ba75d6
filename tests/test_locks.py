"""
Tests for the keyed asyncio lock registry.
"""
import asyncio

import pytest

from app.core.exceptions import LockTimeoutError
from app.core.locks import KeyedLockRegistry, account_lock_key, job_lock_key


class TestKeyedLockRegistry:

    @pytest.mark.unit
    def test_key_helpers(self) -> None:
        assert account_lock_key(12) == "account:12"
        assert job_lock_key(3) == "job:3"

    @pytest.mark.unit
    async def test_hold_releases_on_exit(self) -> None:
        locks = KeyedLockRegistry(default_timeout=0.5)

        async with locks.hold("account:1"):
            assert locks.locked("account:1")

        assert not locks.locked("account:1")

    @pytest.mark.unit
    async def test_hold_releases_on_error(self) -> None:
        locks = KeyedLockRegistry(default_timeout=0.5)

        with pytest.raises(RuntimeError):
            async with locks.hold("account:1"):
                raise RuntimeError("boom")

        assert not locks.locked("account:1")

    @pytest.mark.unit
    async def test_timeout_raises_lock_timeout_error(self) -> None:
        locks = KeyedLockRegistry(default_timeout=0.05)
        await locks.acquire("account:1")

        with pytest.raises(LockTimeoutError) as exc_info:
            await locks.acquire("account:1")

        assert exc_info.value.details["lock_key"] == "account:1"
        locks.release("account:1")

    @pytest.mark.unit
    async def test_different_keys_do_not_block(self) -> None:
        locks = KeyedLockRegistry(default_timeout=0.05)

        async with locks.hold("account:1"):
            async with locks.hold("account:2"):
                assert locks.locked("account:1")
                assert locks.locked("account:2")

    @pytest.mark.unit
    async def test_waiter_proceeds_after_release(self) -> None:
        locks = KeyedLockRegistry(default_timeout=1.0)
        order: list[str] = []

        async def worker(name: str, delay: float) -> None:
            await asyncio.sleep(delay)
            async with locks.hold("job:9"):
                order.append(f"{name}:start")
                await asyncio.sleep(0.02)
                order.append(f"{name}:end")

        await asyncio.gather(worker("first", 0), worker("second", 0.005))

        assert order == ["first:start", "first:end", "second:start", "second:end"]

    @pytest.mark.unit
    async def test_hold_many_releases_acquired_keys_on_timeout(self) -> None:
        locks = KeyedLockRegistry(default_timeout=0.05)
        await locks.acquire("account:2")

        with pytest.raises(LockTimeoutError):
            async with locks.hold_many(["account:2", "account:1"]):
                pass

        # account:1 sorts first and must have been released again
        assert not locks.locked("account:1")
        assert locks.locked("account:2")
        locks.release("account:2")

    @pytest.mark.unit
    async def test_idle_keys_are_dropped(self) -> None:
        locks = KeyedLockRegistry(default_timeout=0.5)

        for account_id in range(5):
            async with locks.hold(account_lock_key(account_id)):
                assert len(locks) == 1

        assert len(locks) == 0

    @pytest.mark.unit
    async def test_key_kept_while_a_waiter_remains(self) -> None:
        locks = KeyedLockRegistry(default_timeout=1.0)
        await locks.acquire("job:4")
        waiter = asyncio.create_task(locks.acquire("job:4"))
        await asyncio.sleep(0.01)

        locks.release("job:4")
        await waiter

        # the waiter now holds the same entry
        assert locks.locked("job:4")
        locks.release("job:4")
        assert len(locks) == 0

    @pytest.mark.unit
    async def test_timed_out_waiter_leaves_no_entry(self) -> None:
        locks = KeyedLockRegistry(default_timeout=0.05)

        with pytest.raises(LockTimeoutError):
            async with locks.hold_many(["account:1", "account:1", "job:2"]):
                await locks.acquire("job:2")

        assert len(locks) == 0
