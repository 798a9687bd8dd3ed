"""Async byte stream helpers used to serve and cache payloads."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, BinaryIO

import structlog


LOGGER = structlog.get_logger("imagecache.streams")

_END = object()


class _SourceFailed:
    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


async def iter_file(handle: BinaryIO, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
    """Yield the contents of an open file, closing it once exhausted or abandoned."""
    try:
        while True:
            chunk = await asyncio.to_thread(handle.read, chunk_size)
            if not chunk:
                return
            yield chunk
    finally:
        handle.close()


class TeeBranch:
    """One consumer side of a :class:`StreamTee`.

    ``aclose()`` detaches the branch whether or not it was ever iterated, so
    the pump never waits on a consumer that is gone.
    """

    def __init__(self, tee: "StreamTee", index: int) -> None:
        self._tee = tee
        self._index = index

    def __aiter__(self) -> "TeeBranch":
        return self

    async def __anext__(self) -> bytes:
        if not self._tee.is_open(self._index):
            raise StopAsyncIteration
        item = await self._tee._queues[self._index].get()
        if item is _END:
            self._tee.close(self._index)
            raise StopAsyncIteration
        if isinstance(item, _SourceFailed):
            self._tee.close(self._index)
            raise item.exc
        return item

    async def aclose(self) -> None:
        self._tee.close(self._index)


class StreamTee:
    """Read a source stream once and fan its chunks out to independent branches.

    Each open branch buffers at most ``buffer_chunks`` chunks; the pump waits
    for the slowest open branch, so memory stays bounded for slow consumers.
    A closed branch stops receiving and no longer holds the pump back. A
    failure of the source is raised in every branch that is still open.
    """

    def __init__(self, source: AsyncIterator[bytes], branches: int = 2, buffer_chunks: int = 4) -> None:
        self._source = source
        self._queues: list[asyncio.Queue] = [asyncio.Queue(maxsize=buffer_chunks) for _ in range(branches)]
        self._open = [True] * branches
        self._pump = asyncio.get_running_loop().create_task(self._run())

    @property
    def pump(self) -> asyncio.Task:
        return self._pump

    def branch(self, index: int) -> TeeBranch:
        return TeeBranch(self, index)

    def branches(self) -> tuple[TeeBranch, ...]:
        return tuple(self.branch(index) for index in range(len(self._queues)))

    def is_open(self, index: int) -> bool:
        return self._open[index]

    def backlog(self, index: int) -> int:
        return self._queues[index].qsize()

    def close(self, index: int) -> None:
        self._open[index] = False
        queue = self._queues[index]
        # draining also wakes a pump blocked on this queue
        while not queue.empty():
            queue.get_nowait()

    async def _publish(self, item: object) -> None:
        for index, queue in enumerate(self._queues):
            if self._open[index]:
                await queue.put(item)

    async def _run(self) -> None:
        try:
            async for chunk in self._source:
                await self._publish(chunk)
                if not any(self._open):
                    LOGGER.debug("stream_abandoned")
                    break
        except Exception as exc:  # noqa: BLE001 - handed to every consumer
            LOGGER.debug("stream_source_failed", error=str(exc))
            await self._publish(_SourceFailed(exc))
            return
        finally:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()
        await self._publish(_END)
