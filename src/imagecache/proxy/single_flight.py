"""Collapse concurrent identical work into one in-flight task."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, Hashable, TypeVar

import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter


LOGGER = structlog.get_logger("imagecache.single_flight")

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")

COALESCED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imagecache_coalesced_requests_total", "Requests that joined work already in flight")
)


class SingleFlight(Generic[K, T]):
    def __init__(self) -> None:
        self._inflight: dict[K, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._inflight)

    async def do(self, key: K, factory: Callable[[], Awaitable[T]]) -> T:
        """Run ``factory`` for ``key`` unless a run is already in flight, then share its result.

        The shared task is shielded: a caller that goes away does not cancel
        the work for the others.
        """
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        else:
            COALESCED_COUNTER.inc()
            LOGGER.debug("request_coalesced", key=str(key))
        return await asyncio.shield(task)

    def _forget(self, key: K, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
