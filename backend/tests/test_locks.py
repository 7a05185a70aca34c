"""
Tests for the per-declaration lock registry.
"""
import asyncio
import uuid

import pytest

from customs.services.locks import EntityLockRegistry


@pytest.mark.asyncio
class TestEntityLockRegistry:

    async def test_lock_released_and_dropped(self):
        registry = EntityLockRegistry()
        key = uuid.uuid4()

        async with registry.hold(key):
            assert registry.is_locked(key)
            assert len(registry) == 1

        assert not registry.is_locked(key)
        assert len(registry) == 0

    async def test_same_key_is_serialised(self):
        registry = EntityLockRegistry()
        key = uuid.uuid4()
        order = []

        async def worker(name):
            async with registry.hold(key):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"), worker("c"))

        assert order == ["a-in", "a-out", "b-in", "b-out", "c-in", "c-out"]
        assert len(registry) == 0

    async def test_lock_kept_while_others_wait(self):
        registry = EntityLockRegistry()
        key = uuid.uuid4()
        release = asyncio.Event()

        async def first():
            async with registry.hold(key):
                await release.wait()

        async def second():
            async with registry.hold(key):
                pass

        tasks = [asyncio.create_task(first()), asyncio.create_task(second())]
        await asyncio.sleep(0)
        assert len(registry) == 1
        release.set()
        await asyncio.gather(*tasks)

        assert len(registry) == 0

    async def test_failure_inside_still_drops_lock(self):
        registry = EntityLockRegistry()
        key = uuid.uuid4()

        with pytest.raises(RuntimeError):
            async with registry.hold(key):
                raise RuntimeError("boom")

        assert len(registry) == 0
        assert not registry.is_locked(key)

    async def test_many_declarations_leave_nothing_behind(self):
        registry = EntityLockRegistry()
        for _ in range(50):
            async with registry.hold(uuid.uuid4()):
                pass
        assert len(registry) == 0
