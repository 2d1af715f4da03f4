# coding=utf-8
# Copyright 2026 The liverelay Authors.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Media bridge: receives publish hooks from the media server and runs one
ffmpeg -> relay forwarder per published stream path.
"""
import argparse
import asyncio
import functools
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request

from liverelay.cli.relay_server import _assert_port_bindable
from liverelay.streaming.backoff import ReconnectBackoff
from liverelay.streaming.bridge import BridgeConnector
from liverelay.streaming.transcoder import TranscoderSupervisor

logger = logging.getLogger(__name__)


def _normalize_stream_path(raw: Any) -> str:
    if not isinstance(raw, str):
        raise ValueError("stream_path is required")
    path = raw.strip()
    if not path or path == "/":
        raise ValueError("stream_path is required")
    if "://" in path or any(ch.isspace() for ch in path):
        raise ValueError("stream_path must be a path like /live/<key>")
    if not path.startswith("/"):
        path = f"/{path}"
    return path


def _media_url_for(args: argparse.Namespace, stream_path: str) -> str:
    base = str(getattr(args, "media_base_url", "rtmp://127.0.0.1:1935") or "").rstrip("/")
    return f"{base}{stream_path}"


def _default_connector_factory(args: argparse.Namespace) -> Callable[[str], BridgeConnector]:
    transcoder_factory = functools.partial(
        TranscoderSupervisor,
        ffmpeg_path=args.ffmpeg_path,
        sample_rate=args.sample_rate,
        read_size=args.read_size,
    )

    def _factory(media_url: str) -> BridgeConnector:
        return BridgeConnector(
            media_url=media_url,
            relay_url=args.relay_url,
            backoff=ReconnectBackoff(
                base_ms=args.backoff_base_ms,
                cap_ms=args.backoff_cap_ms,
                max_shift=args.backoff_max_shift,
            ),
            transcoder_factory=transcoder_factory,
        )

    return _factory


async def _read_stream_path(request: Request) -> str:
    try:
        payload = await request.json()
    except ValueError as e:
        raise HTTPException(status_code=400, detail="invalid json body") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="json body must be an object")
    try:
        return _normalize_stream_path(payload.get("stream_path"))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


def _create_app(
    args: argparse.Namespace,
    connector_factory: Optional[Callable[[str], Any]] = None,
) -> FastAPI:
    factory = connector_factory or _default_connector_factory(args)
    connectors: Dict[str, Any] = {}
    path_locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        for path in list(connectors):
            connector = connectors.pop(path)
            await connector.stop()

    app = FastAPI(title="Live Transcription Media Bridge", lifespan=lifespan)
    app.state.connectors = connectors

    @app.post("/hooks/publish")
    async def on_publish(request: Request) -> Dict[str, Any]:
        stream_path = await _read_stream_path(request)
        media_url = _media_url_for(args, stream_path)
        # hooks for one stream path run one at a time
        async with path_locks.setdefault(stream_path, asyncio.Lock()):
            previous = connectors.pop(stream_path, None)
            if previous is not None:
                logger.info("republish stream=%s, stopping previous bridge", stream_path)
                await previous.stop()

            connector = factory(media_url)
            connectors[stream_path] = connector
            connector.start()
        logger.info("bridging stream=%s media_url=%s active=%d", stream_path, media_url, len(connectors))
        return {"status": "bridging", "stream_path": stream_path, "media_url": media_url}

    @app.post("/hooks/unpublish")
    async def on_unpublish(request: Request) -> Dict[str, Any]:
        stream_path = await _read_stream_path(request)
        async with path_locks.setdefault(stream_path, asyncio.Lock()):
            connector = connectors.pop(stream_path, None)
            if connector is None:
                raise HTTPException(status_code=404, detail="no bridge for stream_path")
            await connector.stop()
        logger.info("bridge stopped stream=%s active=%d", stream_path, len(connectors))
        return {"status": "stopped", "stream_path": stream_path}

    @app.get("/bridges")
    async def bridges() -> Dict[str, Any]:
        return {
            "bridges": [
                dict(connector.snapshot(), stream_path=path)
                for path, connector in sorted(connectors.items())
            ]
        }

    return app


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Media bridge: media server publish hooks -> ffmpeg -> relay audio WebSocket")
    p.add_argument("--host", default="127.0.0.1", help="Bind host for the hook endpoint")
    p.add_argument("--port", type=int, default=8000, help="Bind port for the hook endpoint")
    p.add_argument("--relay-url", default="ws://127.0.0.1:8080/transcribe", help="Relay audio WebSocket URL")
    p.add_argument(
        "--media-base-url",
        default="rtmp://127.0.0.1:1935",
        help="Media server base URL; the published stream path is appended to it",
    )
    p.add_argument("--ffmpeg-path", default="ffmpeg", help="ffmpeg executable")
    p.add_argument("--sample-rate", type=int, default=16000, help="Output PCM sample rate")
    p.add_argument("--read-size", type=int, default=8192, help="Max bytes per forwarded binary frame")
    p.add_argument("--backoff-base-ms", type=int, default=1000, help="First reconnect delay")
    p.add_argument("--backoff-cap-ms", type=int, default=10000, help="Maximum reconnect delay")
    p.add_argument("--backoff-max-shift", type=int, default=6, help="Maximum doubling steps")
    p.add_argument("--log-level", default="info", choices=["critical", "error", "warning", "info", "debug"])
    return p.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    try:
        _assert_port_bindable(args.host, args.port)
    except RuntimeError as exc:
        logger.error("startup guard failed: %s", exc)
        raise SystemExit(2) from exc

    app = _create_app(args)
    logger.info("media bridge ready hooks=http://%s:%d/hooks/publish relay=%s", args.host, args.port, args.relay_url)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
