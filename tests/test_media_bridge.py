import asyncio
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient

from liverelay.cli.media_bridge import _create_app, _normalize_stream_path, parse_args


class _FakeConnector:
    def __init__(self, media_url):
        self.media_url = media_url
        self.started = 0
        self.stopped = 0

    def start(self):
        self.started += 1

    async def stop(self):
        self.stopped += 1

    def snapshot(self):
        return {"media_url": self.media_url, "state": "streaming" if not self.stopped else "stopped"}


def _args():
    return SimpleNamespace(media_base_url="rtmp://127.0.0.1:1935/")


def _app():
    created = []

    def factory(media_url):
        conn = _FakeConnector(media_url)
        created.append(conn)
        return conn

    return _create_app(_args(), connector_factory=factory), created


def test_normalize_stream_path():
    assert _normalize_stream_path("/live/abc") == "/live/abc"
    assert _normalize_stream_path(" live/abc ") == "/live/abc"
    for bad in (None, "", "/", "rtmp://evil/live/x", "/live/a b", 5):
        with pytest.raises(ValueError):
            _normalize_stream_path(bad)


def test_publish_starts_one_bridge_per_stream():
    app, created = _app()
    with TestClient(app) as client:
        resp = client.post("/hooks/publish", json={"stream_path": "/live/show"})
        assert resp.status_code == 200
        assert resp.json() == {
            "status": "bridging",
            "stream_path": "/live/show",
            "media_url": "rtmp://127.0.0.1:1935/live/show",
        }
        assert len(created) == 1
        assert created[0].started == 1

        bridges = client.get("/bridges").json()["bridges"]
        assert bridges == [
            {"media_url": "rtmp://127.0.0.1:1935/live/show", "state": "streaming", "stream_path": "/live/show"}
        ]


def test_republish_replaces_previous_bridge():
    app, created = _app()
    with TestClient(app) as client:
        client.post("/hooks/publish", json={"stream_path": "/live/show"})
        client.post("/hooks/publish", json={"stream_path": "/live/show"})
        assert len(created) == 2
        assert created[0].stopped == 1
        assert created[1].stopped == 0
        assert len(client.get("/bridges").json()["bridges"]) == 1


def test_unpublish_stops_bridge():
    app, created = _app()
    with TestClient(app) as client:
        client.post("/hooks/publish", json={"stream_path": "/live/show"})
        resp = client.post("/hooks/unpublish", json={"stream_path": "/live/show"})
        assert resp.json() == {"status": "stopped", "stream_path": "/live/show"}
        assert created[0].stopped == 1
        assert client.get("/bridges").json() == {"bridges": []}

        missing = client.post("/hooks/unpublish", json={"stream_path": "/live/show"})
        assert missing.status_code == 404


async def test_concurrent_republish_leaves_one_running_bridge():
    release = asyncio.Event()
    created = []

    class _SlowStopConnector(_FakeConnector):
        async def stop(self):
            await release.wait()
            self.stopped += 1

    def factory(media_url):
        conn = _SlowStopConnector(media_url)
        created.append(conn)
        return conn

    app = _create_app(_args(), connector_factory=factory)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://bridge") as client:
        await client.post("/hooks/publish", json={"stream_path": "/live/show"})
        second = asyncio.create_task(client.post("/hooks/publish", json={"stream_path": "/live/show"}))
        third = asyncio.create_task(client.post("/hooks/publish", json={"stream_path": "/live/show"}))
        await asyncio.sleep(0.05)
        release.set()
        responses = await asyncio.gather(second, third)

    assert [r.status_code for r in responses] == [200, 200]
    running = [c for c in created if c.started and not c.stopped]
    assert len(created) == 3
    assert len(running) == 1
    assert app.state.connectors["/live/show"] is running[0]


def test_hooks_reject_bad_payloads():
    app, created = _app()
    with TestClient(app) as client:
        assert client.post("/hooks/publish", json={}).status_code == 400
        assert client.post("/hooks/publish", json=["x"]).status_code == 400
        assert client.post("/hooks/publish", json={"stream_path": "rtmp://h/x"}).status_code == 400
        bad = client.post("/hooks/publish", content=b"nope", headers={"Content-Type": "application/json"})
        assert bad.status_code == 400
    assert created == []


def test_shutdown_stops_all_bridges():
    app, created = _app()
    with TestClient(app) as client:
        client.post("/hooks/publish", json={"stream_path": "/live/a"})
        client.post("/hooks/publish", json={"stream_path": "/live/b"})
    assert [c.stopped for c in created] == [1, 1]


def test_parse_args_defaults(monkeypatch):
    monkeypatch.setattr("sys.argv", ["media_bridge.py"])
    args = parse_args()
    assert args.port == 8000
    assert args.relay_url == "ws://127.0.0.1:8080/transcribe"
    assert args.media_base_url == "rtmp://127.0.0.1:1935"
    assert args.backoff_base_ms == 1000
    assert args.backoff_cap_ms == 10000
