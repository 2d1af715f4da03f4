# coding=utf-8
"""
Streaming speech recognition for the relay.

A recognizer opens one streaming exchange; TranscriptionSession feeds it from
the IncomingAudioQueue and turns its results into transcript broadcasts.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Optional

from liverelay.streaming.audio_queue import IncomingAudioQueue

logger = logging.getLogger(__name__)

VALID_STABILITY_LEVELS = ("low", "medium", "high")


@dataclass(frozen=True)
class RecognitionResult:
    alternatives: List[str] = field(default_factory=list)
    is_partial: bool = False

    @property
    def text(self) -> str:
        if not self.alternatives:
            return ""
        return str(self.alternatives[0] or "").strip()


class AWSTranscribeStream:
    def __init__(self, stream: Any) -> None:
        self._stream = stream

    async def send_audio(self, chunk: bytes) -> None:
        await self._stream.input_stream.send_audio_event(audio_chunk=chunk)

    async def end(self) -> None:
        await self._stream.input_stream.end_stream()

    async def results(self) -> AsyncIterator[RecognitionResult]:
        from amazon_transcribe.model import TranscriptEvent

        async for event in self._stream.output_stream:
            if not isinstance(event, TranscriptEvent):
                continue
            transcript = getattr(event, "transcript", None)
            for result in getattr(transcript, "results", None) or []:
                alternatives = [str(getattr(alt, "transcript", "") or "") for alt in (result.alternatives or [])]
                yield RecognitionResult(alternatives=alternatives, is_partial=bool(result.is_partial))


class AWSTranscribeRecognizer:
    """
    AWS Transcribe Streaming recognizer for 16-bit mono PCM with stabilized partials.
    """

    def __init__(
        self,
        region: str = "us-east-1",
        language_code: str = "en-US",
        sample_rate: int = 16000,
        partial_results_stability: str = "medium",
    ) -> None:
        self.region = str(region or "us-east-1").strip()
        self.language_code = str(language_code or "").strip()
        if len(self.language_code) < 2:
            raise ValueError(f"invalid language_code: {language_code!r}")
        self.sample_rate = int(sample_rate)
        if self.sample_rate not in (8000, 16000, 24000, 48000):
            raise ValueError(f"unsupported sample_rate: {sample_rate}")
        self.partial_results_stability = str(partial_results_stability or "medium").strip().lower()
        if self.partial_results_stability not in VALID_STABILITY_LEVELS:
            raise ValueError(f"partial_results_stability must be one of {VALID_STABILITY_LEVELS}")

    async def start_stream(self) -> AWSTranscribeStream:
        from amazon_transcribe.client import TranscribeStreamingClient

        client = TranscribeStreamingClient(region=self.region)
        stream = await client.start_stream_transcription(
            language_code=self.language_code,
            media_sample_rate_hz=self.sample_rate,
            media_encoding="pcm",
            enable_partial_results_stabilization=True,
            partial_results_stability=self.partial_results_stability,
        )
        logger.info(
            "transcribe stream started region=%s language=%s sample_rate=%d stability=%s",
            self.region,
            self.language_code,
            self.sample_rate,
            self.partial_results_stability,
        )
        return AWSTranscribeStream(stream)


class TranscriptionSession:
    """
    One streaming recognition exchange bound to one audio queue.

    Audio is pulled and sent in queue order while results are broadcast in
    arrival order. A recognizer error is broadcast and ends the session; the
    queue is always closed on exit.
    """

    def __init__(self, queue: IncomingAudioQueue, broadcaster: Any, recognizer: Any) -> None:
        self.queue = queue
        self.broadcaster = broadcaster
        self.recognizer = recognizer
        self.chunks_sent = 0
        self.partials = 0
        self.finals = 0
        self.failed = False
        self.error: Optional[str] = None

    async def _pump_audio(self, stream: Any) -> None:
        while True:
            chunk = await self.queue.pull()
            if chunk is None:
                await stream.end()
                return
            await stream.send_audio(chunk)
            self.chunks_sent += 1

    async def _pump_results(self, stream: Any) -> None:
        async for result in stream.results():
            text = result.text
            if not text:
                continue
            if result.is_partial:
                self.partials += 1
            else:
                self.finals += 1
            self.broadcaster.broadcast(
                {
                    "type": "transcript",
                    "transcript": text,
                    "isPartial": bool(result.is_partial),
                }
            )

    async def run(self) -> None:
        started_at = time.monotonic()
        try:
            stream = await self.recognizer.start_stream()
            audio_task = asyncio.create_task(self._pump_audio(stream))
            results_task = asyncio.create_task(self._pump_results(stream))
            try:
                await asyncio.gather(audio_task, results_task)
            finally:
                for task in (audio_task, results_task):
                    if not task.done():
                        task.cancel()
                        with suppress(asyncio.CancelledError):
                            await task
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed = True
            self.error = str(e) or e.__class__.__name__
            logger.error("transcription session failed err=%s", self.error)
            self.broadcaster.broadcast({"type": "error", "message": self.error})
        finally:
            self.queue.close()
            logger.info(
                "transcription session closed chunks=%d partials=%d finals=%d failed=%s elapsed=%.1fs",
                self.chunks_sent,
                self.partials,
                self.finals,
                self.failed,
                time.monotonic() - started_at,
            )
