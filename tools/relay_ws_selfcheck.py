#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import wave
from pathlib import Path
from typing import Any, Dict, List

import websockets

from liverelay.debug.relay_selfcheck import analyze_relay_events, summarize_result
from liverelay.streaming.transcript_pool import TranscriptPool


def _read_pcm16_mono_wav(path: Path) -> bytes:
    with wave.open(str(path), "rb") as wf:
        channels = wf.getnchannels()
        sample_width = wf.getsampwidth()
        sample_rate = wf.getframerate()
        if channels != 1:
            raise ValueError(f"wav must be mono, got channels={channels}")
        if sample_width != 2:
            raise ValueError(f"wav must be 16-bit PCM, got sampwidth={sample_width}")
        if sample_rate != 16000:
            raise ValueError(f"wav must be 16kHz, got sample_rate={sample_rate}")
        return wf.readframes(wf.getnframes())


def _chunk_pcm16(raw: bytes, chunk_ms: int, sample_rate: int = 16000) -> List[bytes]:
    samples_per_chunk = max(1, int(sample_rate * (chunk_ms / 1000.0)))
    bytes_per_chunk = samples_per_chunk * 2
    chunks: List[bytes] = []
    for i in range(0, len(raw), bytes_per_chunk):
        seg = raw[i : i + bytes_per_chunk]
        if seg:
            chunks.append(seg)
    return chunks


async def _recv_loop(ws, events: List[Dict[str, Any]], pool: TranscriptPool, answered: asyncio.Event) -> None:
    async for raw in ws:
        if isinstance(raw, bytes):
            continue
        msg = json.loads(raw)
        events.append(msg)
        pool.apply(msg)
        if str(msg.get("type", "")) == "ai_answer":
            answered.set()


async def _replay_wav(
    relay_url: str,
    wav_path: Path,
    chunk_ms: int,
    realtime_factor: float,
    settle_sec: float,
    ask: str,
) -> List[Dict[str, Any]]:
    raw_pcm = _read_pcm16_mono_wav(wav_path)
    chunks = _chunk_pcm16(raw_pcm, chunk_ms=chunk_ms, sample_rate=16000)
    base = relay_url.rstrip("/")

    events: List[Dict[str, Any]] = []
    pool = TranscriptPool()
    answered = asyncio.Event()

    async with websockets.connect(f"{base}/ui") as ui:
        info = json.loads(await ui.recv())
        events.append(info)
        if str(info.get("type", "")) != "info":
            raise RuntimeError(f"unexpected first message: {info}")
        recv_task = asyncio.create_task(_recv_loop(ui, events, pool, answered))

        sleep_sec = max(0.0, (chunk_ms / 1000.0) / max(0.01, float(realtime_factor)))
        async with websockets.connect(f"{base}/transcribe", max_size=None) as audio:
            for chunk in chunks:
                await audio.send(chunk)
                if sleep_sec > 0:
                    await asyncio.sleep(sleep_sec)

        await asyncio.sleep(max(0.0, float(settle_sec)))
        if ask:
            question = f"{ask}\n\n{pool.text}".strip()
            await ui.send(json.dumps({"type": "ask_ai", "text": question}))
            try:
                await asyncio.wait_for(answered.wait(), timeout=60.0)
            except asyncio.TimeoutError:
                pass
        recv_task.cancel()
        try:
            await recv_task
        except asyncio.CancelledError:
            pass

    return events


def _load_events_jsonl(path: Path) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            text = line.strip()
            if not text:
                continue
            events.append(json.loads(text))
    return events


def _save_events_jsonl(path: Path, events: List[Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for event in events:
            f.write(json.dumps(event, ensure_ascii=False) + "\n")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Replay a wav through the relay and self-check the UI event stream.")
    p.add_argument("--relay-url", default="ws://127.0.0.1:8080")
    p.add_argument("--wav", default="", help="16kHz/mono/16-bit PCM wav for replay")
    p.add_argument("--chunk-ms", type=int, default=256)
    p.add_argument("--realtime-factor", type=float, default=1.0, help="1.0=realtime, 2.0=2x faster")
    p.add_argument("--settle-sec", type=float, default=3.0, help="wait for trailing results after the audio ends")
    p.add_argument("--ask", default="", help="send ask_ai with this prompt plus the accumulated transcript")
    p.add_argument("--events-jsonl", default="", help="save replayed events to jsonl; or load existing when --wav omitted")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    events_path = Path(args.events_jsonl).expanduser() if args.events_jsonl else None

    if args.wav:
        events = asyncio.run(
            _replay_wav(
                relay_url=str(args.relay_url),
                wav_path=Path(args.wav).expanduser(),
                chunk_ms=int(args.chunk_ms),
                realtime_factor=float(args.realtime_factor),
                settle_sec=float(args.settle_sec),
                ask=str(args.ask or "").strip(),
            )
        )
        if events_path is not None:
            _save_events_jsonl(events_path, events)
    else:
        if events_path is None:
            raise SystemExit("provide --wav for replay, or --events-jsonl to load existing events")
        events = _load_events_jsonl(events_path)

    result = analyze_relay_events(events)
    print(summarize_result(result))


if __name__ == "__main__":
    main()
