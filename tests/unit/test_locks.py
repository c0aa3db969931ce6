"""
Unit tests for src/core/locks.py
"""
import asyncio

import pytest

from src.core.locks import KeyedLocks


async def _acquire(locks, key):
    async with locks.hold(key):
        pass


@pytest.mark.asyncio
async def test_same_key_is_serialised():
    locks = KeyedLocks()
    order = []

    async def worker(name):
        async with locks.hold("room"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))
    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])


@pytest.mark.asyncio
async def test_different_keys_run_concurrently():
    locks = KeyedLocks()
    inside = asyncio.Event()

    async def first():
        async with locks.hold("one"):
            await asyncio.wait_for(inside.wait(), timeout=1)

    async def second():
        async with locks.hold("two"):
            inside.set()

    await asyncio.gather(first(), second())


@pytest.mark.asyncio
async def test_locks_are_released_and_dropped():
    locks = KeyedLocks()
    async with locks.hold("room"):
        assert "room" in locks._locks
    assert locks._locks == {}
    # Free again straight away
    await asyncio.wait_for(_acquire(locks, "room"), timeout=1)


@pytest.mark.asyncio
async def test_lock_released_on_error():
    locks = KeyedLocks()
    with pytest.raises(RuntimeError):
        async with locks.hold("room"):
            raise RuntimeError("boom")
    assert locks._locks == {}
