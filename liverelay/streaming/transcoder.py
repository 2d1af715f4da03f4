# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import signal
from contextlib import suppress
from typing import List, Optional

logger = logging.getLogger(__name__)


def build_transcoder_command(
    media_url: str,
    ffmpeg_path: str = "ffmpeg",
    sample_rate: int = 16000,
) -> List[str]:
    url = str(media_url or "").strip()
    if not url:
        raise ValueError("media_url is empty")
    return [
        str(ffmpeg_path or "ffmpeg"),
        "-hide_banner",
        "-fflags",
        "nobuffer",
        "-flags",
        "low_delay",
        "-i",
        url,
        "-vn",
        "-acodec",
        "pcm_s16le",
        "-ar",
        str(int(sample_rate)),
        "-ac",
        "1",
        "-f",
        "s16le",
        "pipe:1",
    ]


class TranscoderSupervisor:
    """
    Owns one ffmpeg process that turns a media URL into raw s16le mono PCM on stdout.
    """

    def __init__(
        self,
        media_url: str,
        ffmpeg_path: str = "ffmpeg",
        sample_rate: int = 16000,
        read_size: int = 8192,
    ) -> None:
        self.media_url = str(media_url)
        self.command = build_transcoder_command(media_url, ffmpeg_path=ffmpeg_path, sample_rate=sample_rate)
        self.read_size = max(256, int(read_size))
        self.process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    async def spawn(self) -> None:
        if self.alive:
            raise RuntimeError(f"transcoder already running pid={self.pid}")
        self.process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.info("transcoder started pid=%s url=%s", self.process.pid, self.media_url)

    async def _drain_stderr(self) -> None:
        proc = self.process
        if proc is None or proc.stderr is None:
            return
        while True:
            line = await proc.stderr.readline()
            if not line:
                return
            logger.debug("ffmpeg[%s] %s", proc.pid, line.decode("utf-8", errors="replace").rstrip())

    async def read_chunk(self) -> bytes:
        if self.process is None or self.process.stdout is None:
            return b""
        return await self.process.stdout.read(self.read_size)

    def interrupt(self) -> None:
        if not self.alive:
            return
        with suppress(ProcessLookupError):
            self.process.send_signal(signal.SIGINT)
        logger.info("transcoder interrupted pid=%s", self.pid)

    async def wait(self, timeout: float = 3.0) -> Optional[int]:
        proc = self.process
        if proc is None:
            return None
        try:
            await asyncio.wait_for(proc.wait(), timeout=max(0.05, float(timeout)))
        except asyncio.TimeoutError:
            logger.warning("transcoder pid=%s ignored SIGINT, killing", proc.pid)
            with suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
        if self._stderr_task is not None:
            with suppress(asyncio.CancelledError, Exception):
                await asyncio.wait_for(self._stderr_task, timeout=1.0)
        return proc.returncode
