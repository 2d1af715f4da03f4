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
Live audio relay: PCM in on /transcribe, transcript events out on /ui, OCR on POST /ocr.
"""
import argparse
import asyncio
import json
import logging
import os
import socket
from contextlib import suppress
from types import SimpleNamespace
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, Response

from liverelay.services.assistant import AIRequestHandler, ChatCompletionClient
from liverelay.services.ocr import OCRRequestHandler, TextractDocumentClient
from liverelay.services.transcription import AWSTranscribeRecognizer, TranscriptionSession
from liverelay.streaming.audio_queue import IncomingAudioQueue
from liverelay.streaming.backlog import BacklogMonitor
from liverelay.streaming.broadcaster import Broadcaster, UIConnection

SAMPLE_RATE = 16000
logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def _assert_port_bindable(host: str, port: int) -> None:
    bind_host = str(host or "0.0.0.0").strip() or "0.0.0.0"
    if bind_host == "*":
        bind_host = "0.0.0.0"
    bind_port = int(port)
    try:
        addr_infos = socket.getaddrinfo(
            bind_host,
            bind_port,
            family=socket.AF_UNSPEC,
            type=socket.SOCK_STREAM,
            proto=socket.IPPROTO_TCP,
            flags=socket.AI_PASSIVE,
        )
    except socket.gaierror as exc:
        raise RuntimeError(f"invalid bind host '{bind_host}': {exc}") from exc

    last_error: Optional[OSError] = None
    for family, socktype, proto, _, sockaddr in addr_infos:
        probe = socket.socket(family, socktype, proto)
        with suppress(OSError):
            probe.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            probe.bind(sockaddr)
            return
        except OSError as exc:
            last_error = exc
        finally:
            probe.close()

    if last_error is None:
        raise RuntimeError(f"bind {bind_host}:{bind_port} is not available")
    raise RuntimeError(f"bind {bind_host}:{bind_port} is not available: {last_error}") from last_error


def _parse_json_message(text: str) -> Dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid json: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError("json message must be an object")
    return payload


def _peer(websocket: WebSocket) -> str:
    return f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"


def _create_app(
    args: argparse.Namespace,
    recognizer: Any,
    assistant_client: Optional[Any] = None,
    ocr_analyzer: Optional[Any] = None,
) -> FastAPI:
    app = FastAPI(title="Live Transcription Relay")
    broadcaster = Broadcaster()
    runtime = SimpleNamespace(
        muted=False,
        broadcaster=broadcaster,
        audio_queue=None,
        session=None,
        session_task=None,
        audio_producers=0,
        sessions_started=0,
        lagging=False,
        ai_tasks=set(),
    )
    app.state.runtime = runtime

    ui_outbox_size = max(1, int(getattr(args, "ui_outbox_size", 256)))
    backlog = BacklogMonitor(
        sample_rate=int(getattr(args, "sample_rate", SAMPLE_RATE)),
        warn_backlog_sec=float(getattr(args, "backlog_warn_sec", 3.0)),
    )
    ai_handler = AIRequestHandler(assistant_client, broadcaster) if assistant_client is not None else None
    ocr_handler = OCRRequestHandler(ocr_analyzer) if ocr_analyzer is not None else None

    @app.middleware("http")
    async def cors_headers(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    @app.post("/ocr")
    async def ocr(request: Request) -> JSONResponse:
        if ocr_handler is None:
            return JSONResponse({"error": "OCR is not configured"}, status_code=503)
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        status, body = await ocr_handler.handle(payload)
        return JSONResponse(body, status_code=status)

    @app.get("/status")
    async def status() -> Dict[str, Any]:
        queue = runtime.audio_queue
        task = runtime.session_task
        return {
            "ui_clients": len(broadcaster),
            "muted": bool(runtime.muted),
            "audio_producers": int(runtime.audio_producers),
            "session_active": bool(task is not None and not task.done()),
            "sessions_started": int(runtime.sessions_started),
            "backlog": int(queue.backlog) if queue is not None else 0,
            "pushed": int(queue.pushed) if queue is not None else 0,
            "delivered": int(queue.delivered) if queue is not None else 0,
        }

    def _ensure_session() -> IncomingAudioQueue:
        queue = runtime.audio_queue
        task = runtime.session_task
        if queue is not None and not queue.closed and task is not None and not task.done():
            return queue
        queue = IncomingAudioQueue()
        session = TranscriptionSession(queue, broadcaster, recognizer)
        runtime.audio_queue = queue
        runtime.session = session
        runtime.session_task = asyncio.create_task(session.run())
        runtime.sessions_started += 1
        runtime.lagging = False
        logger.info("transcription session started n=%d", runtime.sessions_started)
        return queue

    def _check_backlog(queue: IncomingAudioQueue) -> None:
        decision = backlog.evaluate(queue.backlog_bytes)
        if decision.lagging == runtime.lagging:
            return
        runtime.lagging = decision.lagging
        if decision.lagging:
            logger.warning("recognizer lagging backlog=%.1fs chunks=%d", decision.backlog_sec, queue.backlog)
        else:
            logger.info("recognizer caught up backlog=%.1fs", decision.backlog_sec)

    @app.websocket("/transcribe")
    async def audio_stream(websocket: WebSocket) -> None:
        await websocket.accept()
        peer = _peer(websocket)
        queue = _ensure_session()
        runtime.audio_producers += 1
        stats = SimpleNamespace(frames=0, bytes=0, muted_frames=0, text_frames=0)
        logger.info("audio producer connected peer=%s producers=%d", peer, runtime.audio_producers)
        broadcaster.broadcast({"type": "status", "message": "audio stream connected"})

        disconnected = False
        try:
            while True:
                msg = await websocket.receive()
                if msg.get("type") == "websocket.disconnect":
                    disconnected = True
                    break

                raw = msg.get("bytes")
                if raw is not None:
                    if runtime.muted:
                        stats.muted_frames += 1
                    else:
                        if queue.closed:
                            logger.info("transcription session ended, restarting for peer=%s", peer)
                            queue = _ensure_session()
                        queue.push(raw)
                        stats.frames += 1
                        stats.bytes += len(raw)
                        _check_backlog(queue)
                else:
                    stats.text_frames += 1
                broadcaster.broadcast({"type": "audio_status", "status": "receiving"})
        finally:
            runtime.audio_producers = max(0, runtime.audio_producers - 1)
            if runtime.audio_producers == 0 and runtime.audio_queue is not None:
                runtime.audio_queue.close()
            broadcaster.broadcast({"type": "status", "message": "audio stream disconnected"})
            if not disconnected:
                with suppress(Exception):
                    await websocket.close(code=1011)
            logger.info(
                "audio close peer=%s producers=%d frames=%d bytes=%d muted_frames=%d text_frames=%d",
                peer,
                runtime.audio_producers,
                stats.frames,
                stats.bytes,
                stats.muted_frames,
                stats.text_frames,
            )

    def _dispatch_ui_message(conn: UIConnection, payload: Dict[str, Any]) -> None:
        msg_type = str(payload.get("type", "")).strip()
        if msg_type == "set_mute":
            runtime.muted = bool(payload.get("mute"))
            logger.info("mute toggled muted=%s peer=%s", runtime.muted, conn.peer)
            return
        if msg_type == "ask_ai":
            if ai_handler is None:
                broadcaster.send(conn, {"type": "ai_answer", "text": "AI is not configured"})
                return
            task = asyncio.create_task(ai_handler.handle(conn, payload.get("text")))
            runtime.ai_tasks.add(task)
            task.add_done_callback(runtime.ai_tasks.discard)
            return
        logger.debug("ignored ui message type=%s peer=%s", msg_type, conn.peer)

    @app.websocket("/ui")
    async def ui_stream(websocket: WebSocket) -> None:
        await websocket.accept()
        conn = UIConnection(websocket, outbox_size=ui_outbox_size)
        sender = asyncio.create_task(conn.run_sender())
        broadcaster.register(conn)
        broadcaster.send(conn, {"type": "info", "message": "UI connected"})
        logger.info("ui connected peer=%s clients=%d", conn.peer, len(broadcaster))

        try:
            while True:
                msg = await websocket.receive()
                if msg.get("type") == "websocket.disconnect":
                    break
                text = msg.get("text")
                if text is None:
                    continue
                try:
                    payload = _parse_json_message(text)
                except ValueError as e:
                    logger.debug("ignored ui message peer=%s err=%s", conn.peer, e)
                    continue
                _dispatch_ui_message(conn, payload)
        finally:
            broadcaster.unregister(conn)
            conn.close()
            with suppress(asyncio.CancelledError, Exception):
                await sender
            logger.info("ui disconnected peer=%s clients=%d dropped=%s", conn.peer, len(broadcaster), conn.dropped)

    return app


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Live transcription relay (audio WebSocket -> AWS Transcribe -> UI WebSocket)")
    p.add_argument("--host", default="0.0.0.0", help="Bind host")
    p.add_argument("--port", type=int, default=8080, help="Bind port")
    p.add_argument("--aws-region", default=os.environ.get("AWS_REGION", "ap-south-1"), help="AWS region for Transcribe and Textract")
    p.add_argument("--language-code", default="en-US", help="Transcribe language code")
    p.add_argument("--sample-rate", type=int, default=SAMPLE_RATE, help="PCM sample rate of inbound audio")
    p.add_argument(
        "--partial-results-stability",
        default="medium",
        choices=["low", "medium", "high"],
        help="Transcribe partial result stabilization level",
    )
    p.add_argument(
        "--ai-api-base-url",
        default=os.environ.get("OPENAI_BASE_URL", "https://api.openai.com"),
        help="OpenAI-compatible chat completions base URL",
    )
    p.add_argument("--ai-model", default="gpt-4o-mini", help="Chat completion model name")
    p.add_argument(
        "--ai-api-key",
        default=os.environ.get("OPENAI_API_KEY", ""),
        help="Bearer token for the chat completions API (defaults to $OPENAI_API_KEY)",
    )
    p.add_argument("--ai-timeout-sec", type=float, default=30.0, help="Timeout seconds for each ask_ai request")
    p.add_argument("--ai-max-tokens", type=int, default=512, help="Max tokens per AI answer")
    p.add_argument("--disable-ai", action="store_true", help="Answer ask_ai with a not-configured error")
    p.add_argument("--disable-ocr", action="store_true", help="Reject POST /ocr with 503")
    p.add_argument(
        "--ocr-access-key-id",
        default=os.environ.get("AWS_ACCESS_KEY_ID_OCR", ""),
        help="Optional dedicated access key for Textract",
    )
    p.add_argument(
        "--ocr-secret-access-key",
        default=os.environ.get("AWS_SECRET_ACCESS_KEY_OCR", ""),
        help="Optional dedicated secret key for Textract",
    )
    p.add_argument("--ui-outbox-size", type=int, default=256, help="Queued events per UI client before it is dropped")
    p.add_argument(
        "--backlog-warn-sec",
        type=float,
        default=3.0,
        help="Log a warning when queued audio waiting for the recognizer exceeds this many seconds",
    )
    p.add_argument("--ssl-certfile", default=None, help="Path to TLS certificate file (enables HTTPS/WSS)")
    p.add_argument("--ssl-keyfile", default=None, help="Path to TLS private key file")
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

    recognizer = AWSTranscribeRecognizer(
        region=args.aws_region,
        language_code=args.language_code,
        sample_rate=args.sample_rate,
        partial_results_stability=args.partial_results_stability,
    )

    assistant_client: Optional[Any] = None
    if not args.disable_ai:
        assistant_client = ChatCompletionClient(
            base_url=args.ai_api_base_url,
            model=args.ai_model,
            api_key=args.ai_api_key,
            timeout_sec=args.ai_timeout_sec,
            max_tokens=args.ai_max_tokens,
        )
        logger.info("ai client ready url=%s model=%s", assistant_client.chat_url, assistant_client.model)

    ocr_analyzer: Optional[Any] = None
    if not args.disable_ocr:
        ocr_analyzer = TextractDocumentClient(
            region=args.aws_region,
            aws_access_key_id=args.ocr_access_key_id,
            aws_secret_access_key=args.ocr_secret_access_key,
        )
        logger.info("textract client ready region=%s", ocr_analyzer.region)

    app = _create_app(args, recognizer, assistant_client=assistant_client, ocr_analyzer=ocr_analyzer)
    scheme = "wss" if args.ssl_certfile else "ws"
    logger.info(
        "relay ready audio=%s://%s:%d/transcribe ui=%s://%s:%d/ui",
        scheme,
        args.host,
        args.port,
        scheme,
        args.host,
        args.port,
    )
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        ssl_certfile=args.ssl_certfile,
        ssl_keyfile=args.ssl_keyfile,
    )


if __name__ == "__main__":
    main()
