# coding=utf-8
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .backoff import ReconnectBackoff
from .transcoder import TranscoderSupervisor

logger = logging.getLogger(__name__)


class BridgeState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSING = "closing"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


def _default_connect(url: str) -> Awaitable[Any]:
    return websockets.connect(url, max_size=None, open_timeout=10, close_timeout=2)


class BridgeConnector:
    """
    Keeps one transcoder process and one relay socket alive as a pair.

    Either side failing tears both down in a single step (_teardown), then the
    pair is rebuilt after a backoff delay. A transcoder is only ever spawned
    from _on_socket_open, so one connector never runs two at once.
    """

    def __init__(
        self,
        media_url: str,
        relay_url: str,
        backoff: Optional[ReconnectBackoff] = None,
        transcoder_factory: Optional[Callable[[str], Any]] = None,
        connect: Optional[Callable[[str], Awaitable[Any]]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        kill_timeout_sec: float = 3.0,
    ) -> None:
        self.media_url = str(media_url or "").strip()
        if not self.media_url:
            raise ValueError("media_url is empty")
        self.relay_url = str(relay_url or "").strip()
        if not self.relay_url:
            raise ValueError("relay_url is empty")
        self.backoff = backoff if backoff is not None else ReconnectBackoff()
        self.transcoder_factory = transcoder_factory or TranscoderSupervisor
        self._connect = connect or _default_connect
        self._sleep = sleep or asyncio.sleep
        self.kill_timeout_sec = max(0.1, float(kill_timeout_sec))

        self.state = BridgeState.IDLE
        self.ws: Optional[Any] = None
        self.transcoder: Optional[Any] = None
        self.sessions = 0
        self.frames_sent = 0
        self.bytes_sent = 0
        self.last_error = ""
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

    def _transition(self, state: BridgeState, detail: str = "") -> None:
        if state == self.state:
            return
        logger.info(
            "bridge %s -> %s url=%s attempt=%d%s",
            self.state.value,
            state.value,
            self.media_url,
            self.backoff.attempt,
            f" ({detail})" if detail else "",
        )
        self.state = state

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self._teardown("stopped")
        self._transition(BridgeState.STOPPED)

    async def run(self) -> None:
        try:
            while not self._stopping:
                ws = await self._enter_connecting()
                if ws is None:
                    await self._schedule_reconnect()
                    continue
                if not await self._on_socket_open(ws):
                    await self._teardown("transcoder spawn failed")
                    await self._schedule_reconnect()
                    continue
                reason = await self._stream()
                await self._teardown(reason)
                await self._schedule_reconnect()
        finally:
            await self._teardown("stopped")
            self._transition(BridgeState.STOPPED)

    async def _enter_connecting(self) -> Optional[Any]:
        self._transition(BridgeState.CONNECTING)
        logger.info("[attempt %d] connecting to %s", self.backoff.attempt, self.relay_url)
        try:
            return await self._connect(self.relay_url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self.last_error = str(e)
            logger.warning("relay connect failed url=%s err=%s", self.relay_url, e)
            return None

    async def _on_socket_open(self, ws: Any) -> bool:
        self.ws = ws
        self.backoff.reset()
        transcoder = self.transcoder_factory(self.media_url)
        try:
            await transcoder.spawn()
        except OSError as e:
            self.last_error = str(e)
            logger.error("transcoder spawn failed url=%s err=%s", self.media_url, e)
            return False
        self.transcoder = transcoder
        self.sessions += 1
        self._transition(BridgeState.STREAMING)
        return True

    async def _forward_output(self) -> str:
        while True:
            chunk = await self.transcoder.read_chunk()
            if not chunk:
                return "transcoder exited"
            try:
                await self.ws.send(chunk)
            except (ConnectionClosed, OSError) as e:
                return f"socket send failed: {e}"
            self.frames_sent += 1
            self.bytes_sent += len(chunk)

    async def _watch_socket(self) -> str:
        await self.ws.wait_closed()
        code = getattr(self.ws, "close_code", None)
        return f"socket closed code={code}"

    async def _stream(self) -> str:
        pump = asyncio.create_task(self._forward_output())
        watch = asyncio.create_task(self._watch_socket())
        try:
            done, _ = await asyncio.wait({pump, watch}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (pump, watch):
                if not task.done():
                    task.cancel()
                    with suppress(asyncio.CancelledError):
                        await task
        task = pump if pump in done else watch
        exc = task.exception()
        if exc is not None:
            self.last_error = str(exc)
            return f"stream error: {exc}"
        return task.result()

    async def _teardown(self, reason: str) -> None:
        transcoder, self.transcoder = self.transcoder, None
        ws, self.ws = self.ws, None
        if transcoder is None and ws is None:
            return
        self._transition(BridgeState.CLOSING, reason)
        if transcoder is not None:
            transcoder.interrupt()
            await transcoder.wait(timeout=self.kill_timeout_sec)
        if ws is not None:
            with suppress(Exception):
                await ws.close()

    async def _schedule_reconnect(self) -> None:
        if self._stopping:
            return
        self._transition(BridgeState.RECONNECTING)
        delay_ms = self.backoff.next_delay_ms()
        logger.info("reconnecting in %.1fs url=%s", delay_ms / 1000.0, self.media_url)
        await self._sleep(delay_ms / 1000.0)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "media_url": self.media_url,
            "state": self.state.value,
            "attempt": int(self.backoff.attempt),
            "sessions": int(self.sessions),
            "frames_sent": int(self.frames_sent),
            "bytes_sent": int(self.bytes_sent),
            "last_error": str(self.last_error or ""),
        }
