"""Tests for the per-run resource pools."""

import asyncio
import random

import pytest

from flowengine.graph.node import ResourceClass
from flowengine.runtime.resource_pool import ResourcePoolManager, get_pool_limit


class TestLimits:
    def test_defaults(self):
        pools = ResourcePoolManager()
        assert pools.limit("llm") == 2
        assert pools.limit(ResourceClass.HTTP) == 4
        assert pools.limit("image") == 1
        assert pools.limit("cpu") == 4

    def test_override(self):
        pools = ResourcePoolManager({"llm": 5})
        assert pools.limit("llm") == 5
        assert pools.limit("cpu") == 4

    def test_non_integer_override_ignored(self):
        assert get_pool_limit("http", {"http": "lots"}) == 4

    def test_zero_limit_rejected(self):
        with pytest.raises(ValueError):
            ResourcePoolManager({"cpu": 0})

    def test_release_without_acquire_raises(self):
        with pytest.raises(RuntimeError):
            ResourcePoolManager().release("cpu")


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_acquire_within_limit_is_immediate(self):
        pools = ResourcePoolManager({"llm": 2})
        await pools.acquire("llm")
        await pools.acquire("llm")
        assert pools.active("llm") == 2
        pools.release("llm")
        pools.release("llm")
        assert pools.active("llm") == 0

    @pytest.mark.asyncio
    async def test_waiter_blocks_until_release(self):
        pools = ResourcePoolManager({"image": 1})
        await pools.acquire("image")

        waiter = asyncio.create_task(pools.acquire("image"))
        await asyncio.sleep(0)
        assert not waiter.done()
        assert pools.waiting("image") == 1

        pools.release("image")
        await waiter
        # Slot handed over: the count never dropped
        assert pools.active("image") == 1
        assert pools.peak("image") == 1
        pools.release("image")

    @pytest.mark.asyncio
    async def test_grants_are_fifo(self):
        pools = ResourcePoolManager({"llm": 1})
        await pools.acquire("llm")
        order: list[int] = []

        async def worker(i: int):
            async with pools.slot("llm"):
                order.append(i)
                await asyncio.sleep(0)

        tasks = []
        for i in range(5):
            tasks.append(asyncio.create_task(worker(i)))
            await asyncio.sleep(0)

        pools.release("llm")
        await asyncio.gather(*tasks)
        assert order == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_classes_are_independent(self):
        pools = ResourcePoolManager({"llm": 1, "cpu": 1})
        await pools.acquire("llm")
        await asyncio.wait_for(pools.acquire("cpu"), timeout=1)
        assert pools.active("llm") == 1
        assert pools.active("cpu") == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self):
        pools = ResourcePoolManager({"http": 1})
        await pools.acquire("http")
        waiter = asyncio.create_task(pools.acquire("http"))
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert pools.waiting("http") == 0

        pools.release("http")
        assert pools.active("http") == 0

    @pytest.mark.asyncio
    async def test_slot_released_when_body_raises(self):
        pools = ResourcePoolManager()
        with pytest.raises(ValueError):
            async with pools.slot("cpu"):
                raise ValueError("boom")
        assert pools.active("cpu") == 0


class TestConcurrencyProperty:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [1, 7, 42, 1234])
    async def test_active_never_exceeds_limit(self, seed):
        rng = random.Random(seed)
        limits = {"llm": rng.randint(1, 3), "http": rng.randint(1, 4), "image": 1, "cpu": 2}
        pools = ResourcePoolManager(limits)
        violations: list[str] = []

        async def job(rc: str, hops: int):
            async with pools.slot(rc):
                if pools.active(rc) > limits[rc]:
                    violations.append(rc)
                for _ in range(hops):
                    await asyncio.sleep(0)

        classes = list(limits)
        jobs = [job(rng.choice(classes), rng.randint(0, 5)) for _ in range(60)]
        await asyncio.gather(*jobs)

        assert violations == []
        for rc, limit in limits.items():
            assert pools.peak(rc) <= limit
            assert pools.active(rc) == 0
