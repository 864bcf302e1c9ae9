"""Per-queue concurrency limits for the dispatcher."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from contextlib import asynccontextmanager

__all__ = ["BoundedPools"]


class BoundedPools:
    """Manage one semaphore per queue plus an in-flight counter.

    A slot is reserved when a job is leased and held until its task finishes,
    so ``free_slots`` never reports capacity that a started task will claim.
    """

    def __init__(self, pool_limits: Mapping[str, int]) -> None:
        self._pool_limits = {str(name): max(1, int(value)) for name, value in pool_limits.items()}
        self._pools: dict[str, asyncio.Semaphore] = {}
        self._reserved: dict[str, int] = {name: 0 for name in self._pool_limits}

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._pool_limits)

    def limit_for(self, name: str) -> int:
        try:
            return self._pool_limits[str(name)]
        except KeyError:
            raise KeyError(f"no pool registered for queue {name!r}") from None

    def semaphore_for(self, name: str) -> asyncio.Semaphore:
        key = str(name)
        semaphore = self._pools.get(key)
        if semaphore is None:
            semaphore = asyncio.Semaphore(self.limit_for(key))
            self._pools[key] = semaphore
        return semaphore

    def reserved(self, name: str) -> int:
        return self._reserved.get(str(name), 0)

    def free_slots(self, name: str) -> int:
        return max(0, self.limit_for(name) - self.reserved(name))

    def reserve(self, name: str) -> None:
        key = str(name)
        if self.free_slots(key) <= 0:
            raise RuntimeError(f"pool {key!r} has no free slots")
        self._reserved[key] = self.reserved(key) + 1

    def release(self, name: str) -> None:
        key = str(name)
        self._reserved[key] = max(0, self.reserved(key) - 1)

    @asynccontextmanager
    async def acquire(self, name: str):
        async with self.semaphore_for(name):
            yield
