# coding=utf-8
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, Dict, Set

from starlette.websockets import WebSocket, WebSocketState

logger = logging.getLogger(__name__)

_STOP = object()
_DROP = object()


def encode_event(event: Dict[str, Any]) -> str:
    return json.dumps(event, ensure_ascii=False, separators=(",", ":"))


class UIConnection:
    """
    One UI websocket plus its outbound queue.

    Writers only enqueue; run_sender() is the single task that awaits the
    transport, so a slow client backs up its own outbox and nothing else.
    """

    def __init__(self, websocket: WebSocket, outbox_size: int = 256) -> None:
        self.websocket = websocket
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=max(1, int(outbox_size)))
        self.dropped = False
        self._closing = False
        client = getattr(websocket, "client", None)
        self.peer = f"{client.host}:{client.port}" if client else "unknown"

    @property
    def is_open(self) -> bool:
        if self._closing:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def _drain(self) -> None:
        while True:
            try:
                self.outbox.get_nowait()
            except asyncio.QueueEmpty:
                return

    def enqueue(self, text: str) -> bool:
        if self._closing:
            return False
        try:
            self.outbox.put_nowait(text)
            return True
        except asyncio.QueueFull:
            logger.warning("ui outbox overflow peer=%s size=%d, dropping client", self.peer, self.outbox.maxsize)
            self.dropped = True
            self._closing = True
            self._drain()
            self.outbox.put_nowait(_DROP)
            return False

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self.outbox.full():
            self._drain()
        self.outbox.put_nowait(_STOP)

    async def run_sender(self) -> None:
        while True:
            item = await self.outbox.get()
            if item is _STOP:
                return
            if item is _DROP:
                with suppress(Exception):
                    await self.websocket.close(code=1013)
                return
            try:
                await self.websocket.send_text(item)
            except Exception as e:
                logger.info("ui send failed peer=%s err=%s", self.peer, e)
                self._closing = True
                return


class Broadcaster:
    """
    Fan-out of JSON events to every registered UI connection.
    """

    def __init__(self) -> None:
        self._clients: Set[Any] = set()

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, conn: Any) -> bool:
        return conn in self._clients

    def register(self, conn: Any) -> None:
        self._clients.add(conn)

    def unregister(self, conn: Any) -> None:
        self._clients.discard(conn)

    def broadcast(self, event: Dict[str, Any]) -> int:
        text = encode_event(event)
        delivered = 0
        for conn in list(self._clients):
            if not conn.is_open:
                continue
            if conn.enqueue(text):
                delivered += 1
        return delivered

    def send(self, conn: Any, event: Dict[str, Any]) -> bool:
        if not conn.is_open:
            return False
        return bool(conn.enqueue(encode_event(event)))
