"""
Resource pools for workflow concurrency.

Bounds how many nodes of each resource class run at once inside one run,
so a graph with twenty LLM nodes cannot fan out twenty paid calls at the
same moment. One manager per run; nothing here is shared across runs or
processes.

Grants are FIFO within a class. A release with waiters queued hands the
slot straight to the head of the queue, so the active count never dips
and no late arrival can jump ahead.
"""

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager

from flowengine.config import DEFAULT_POOL_LIMITS
from flowengine.graph.node import ResourceClass

logger = logging.getLogger(__name__)


def get_pool_limit(
    resource_class: ResourceClass | str,
    limits: Mapping[str, int] | None = None,
) -> int:
    """Configured limit for a class, falling back to the default table."""
    name = ResourceClass(resource_class).value
    if limits and isinstance(limits.get(name), int):
        return limits[name]
    return DEFAULT_POOL_LIMITS[name]


class ResourcePoolManager:
    """
    Per-run concurrency limiter with one counter and FIFO queue per class.

    Example:
        pools = ResourcePoolManager({"llm": 1})

        async with pools.slot(ResourceClass.LLM):
            await call_model()
    """

    def __init__(self, limits: Mapping[str, int] | None = None):
        self._limits: dict[ResourceClass, int] = {}
        for rc in ResourceClass:
            limit = get_pool_limit(rc, limits)
            if limit < 1:
                raise ValueError(f"Pool limit for '{rc}' must be at least 1, got {limit}")
            self._limits[rc] = limit
        self._active: dict[ResourceClass, int] = {rc: 0 for rc in ResourceClass}
        self._peak: dict[ResourceClass, int] = {rc: 0 for rc in ResourceClass}
        self._waiters: dict[ResourceClass, deque[asyncio.Future[None]]] = {
            rc: deque() for rc in ResourceClass
        }

    def limit(self, resource_class: ResourceClass | str) -> int:
        return self._limits[ResourceClass(resource_class)]

    def active(self, resource_class: ResourceClass | str) -> int:
        return self._active[ResourceClass(resource_class)]

    def peak(self, resource_class: ResourceClass | str) -> int:
        """Highest active count seen for the class during this manager's life."""
        return self._peak[ResourceClass(resource_class)]

    def waiting(self, resource_class: ResourceClass | str) -> int:
        return sum(1 for f in self._waiters[ResourceClass(resource_class)] if not f.done())

    def _grant(self, rc: ResourceClass) -> None:
        self._active[rc] += 1
        self._peak[rc] = max(self._peak[rc], self._active[rc])

    async def acquire(self, resource_class: ResourceClass | str) -> None:
        """Take a slot, suspending in FIFO order until one is free."""
        rc = ResourceClass(resource_class)
        if self._active[rc] < self._limits[rc] and not self.waiting(rc):
            self._grant(rc)
            return

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters[rc].append(fut)
        logger.debug(
            "Waiting for %s slot (%d active, %d queued)",
            rc,
            self._active[rc],
            len(self._waiters[rc]),
            extra={"resource_class": rc.value},
        )
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was handed over just as we were cancelled: pass it on
                self.release(rc)
            else:
                try:
                    self._waiters[rc].remove(fut)
                except ValueError:
                    pass
            raise

    def release(self, resource_class: ResourceClass | str) -> None:
        """Return a slot, handing it to the longest waiter if there is one."""
        rc = ResourceClass(resource_class)
        if self._active[rc] <= 0:
            raise RuntimeError(f"release() called for '{rc}' with no active slots")

        waiters = self._waiters[rc]
        while waiters:
            fut = waiters.popleft()
            if not fut.done():
                # Hand-off: the count stays where it is
                fut.set_result(None)
                return
        self._active[rc] -= 1

    @asynccontextmanager
    async def slot(self, resource_class: ResourceClass | str) -> AsyncIterator[None]:
        """Hold one slot for the duration of the block; always released."""
        await self.acquire(resource_class)
        try:
            yield
        finally:
            self.release(resource_class)
