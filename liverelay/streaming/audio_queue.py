# coding=utf-8
from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

_END_OF_STREAM = object()


class IncomingAudioQueue:
    """
    Unbounded FIFO between socket-delivered audio chunks and one pulling consumer.

    push() never blocks and never drops; close() ends the stream for every
    waiting and future pull() exactly once per call.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._backlog_bytes = 0
        self.pushed = 0
        self.delivered = 0
        self.depth_peak = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def backlog(self) -> int:
        size = self._queue.qsize()
        return size - 1 if self._closed and size > 0 else size

    @property
    def backlog_bytes(self) -> int:
        return self._backlog_bytes

    def push(self, chunk: bytes) -> None:
        if self._closed:
            return
        data = bytes(chunk)
        self._queue.put_nowait(data)
        self._backlog_bytes += len(data)
        self.pushed += 1
        self.depth_peak = max(self.depth_peak, self._queue.qsize())

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_END_OF_STREAM)

    async def pull(self) -> Optional[bytes]:
        item = await self._queue.get()
        if item is _END_OF_STREAM:
            # keep the sentinel visible to other waiters and later pulls
            self._queue.put_nowait(_END_OF_STREAM)
            return None
        self._backlog_bytes = max(0, self._backlog_bytes - len(item))
        self.delivered += 1
        return item

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.pull()
            if chunk is None:
                return
            yield chunk
