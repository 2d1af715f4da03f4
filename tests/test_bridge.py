import asyncio

import pytest

from liverelay.streaming.backoff import ReconnectBackoff
from liverelay.streaming.bridge import BridgeConnector, BridgeState


class _FakeSocket:
    def __init__(self, log):
        self.log = log
        self.sent = []
        self.close_code = None
        self._closed = asyncio.Event()

    async def send(self, data):
        if self._closed.is_set():
            raise OSError("socket is closed")
        self.sent.append(bytes(data))

    async def wait_closed(self):
        await self._closed.wait()

    async def close(self):
        self.log.append("socket.close")
        if self.close_code is None:
            self.close_code = 1000
        self._closed.set()

    def drop(self, code=1006):
        self.close_code = code
        self._closed.set()


class _FakeTranscoder:
    alive_count = 0
    alive_peak = 0

    def __init__(self, log, on_spawn=None, fail=False):
        self.log = log
        self.on_spawn = on_spawn
        self.fail = fail
        self._out = asyncio.Queue()
        self._alive = False

    async def spawn(self):
        if self.fail:
            raise OSError("ffmpeg not found")
        self.log.append("spawn")
        self._alive = True
        _FakeTranscoder.alive_count += 1
        _FakeTranscoder.alive_peak = max(_FakeTranscoder.alive_peak, _FakeTranscoder.alive_count)
        if self.on_spawn is not None:
            self.on_spawn(self)

    def feed(self, chunk):
        self._out.put_nowait(chunk)

    def exit(self):
        self._out.put_nowait(b"")

    async def read_chunk(self):
        return await self._out.get()

    def interrupt(self):
        self.log.append("interrupt")
        self._out.put_nowait(b"")

    async def wait(self, timeout=3.0):
        self.log.append("wait")
        if self._alive:
            self._alive = False
            _FakeTranscoder.alive_count -= 1
        return 0


class _Harness:
    def __init__(self, max_sleeps, transcoder_factory=None, refuse=False):
        self.log = []
        self.delays = []
        self.states = []
        self.sockets = []
        self.max_sleeps = max_sleeps
        self.refuse = refuse
        self.connector = BridgeConnector(
            "rtmp://127.0.0.1/live/demo",
            "ws://127.0.0.1:8080/transcribe",
            backoff=ReconnectBackoff(base_ms=1000, cap_ms=10000),
            transcoder_factory=transcoder_factory or (lambda url: _FakeTranscoder(self.log)),
            connect=self.connect,
            sleep=self.sleep,
        )

    async def connect(self, url):
        self.log.append("connect")
        if self.refuse:
            raise OSError("connection refused")
        sock = _FakeSocket(self.log)
        self.sockets.append(sock)
        return sock

    async def sleep(self, sec):
        self.log.append(("sleep", sec))
        self.delays.append(sec)
        self.states.append(self.connector.state)
        if len(self.delays) >= self.max_sleeps:
            await self.connector.stop()

    async def run(self):
        await asyncio.wait_for(self.connector.run(), timeout=2.0)


@pytest.fixture(autouse=True)
def _reset_alive_counters():
    _FakeTranscoder.alive_count = 0
    _FakeTranscoder.alive_peak = 0


async def test_socket_drop_interrupts_transcoder_before_reconnect_delay():
    h = _Harness(max_sleeps=1)
    h.connector.transcoder_factory = lambda url: _FakeTranscoder(h.log, on_spawn=lambda t: h.sockets[-1].drop())

    await h.run()

    assert h.log == ["connect", "spawn", "interrupt", "wait", "socket.close", ("sleep", 1.0)]
    assert h.states == [BridgeState.RECONNECTING]
    assert h.connector.state == BridgeState.STOPPED
    assert h.connector.transcoder is None
    assert h.connector.ws is None


async def test_transcoder_exit_closes_socket_and_respawns_on_reconnect():
    h = _Harness(max_sleeps=2)

    def on_spawn(t):
        t.feed(b"abc")
        t.feed(b"de")
        t.exit()

    h.connector.transcoder_factory = lambda url: _FakeTranscoder(h.log, on_spawn=on_spawn)

    await h.run()

    assert h.delays == [1.0, 1.0]
    assert len(h.sockets) == 2
    assert all(s.close_code == 1000 for s in h.sockets)
    assert h.sockets[0].sent == [b"abc", b"de"]
    assert h.sockets[1].sent == [b"abc", b"de"]
    assert h.log.count("spawn") == 2
    assert _FakeTranscoder.alive_peak == 1
    assert h.connector.sessions == 2
    assert h.connector.frames_sent == 4
    assert h.connector.bytes_sent == 10


async def test_refused_connect_backs_off_exponentially_without_spawning():
    h = _Harness(max_sleeps=4, refuse=True)

    await h.run()

    assert h.delays == [1.0, 2.0, 4.0, 8.0]
    assert "spawn" not in h.log
    assert h.connector.sessions == 0
    assert h.connector.last_error == "connection refused"
    assert h.connector.state == BridgeState.STOPPED


async def test_successful_open_resets_backoff():
    h = _Harness(max_sleeps=3)
    attempts = iter([True, True, False])

    async def flaky_connect(url):
        h.log.append("connect")
        if next(attempts):
            raise OSError("connection refused")
        sock = _FakeSocket(h.log)
        h.sockets.append(sock)
        return sock

    h.connector._connect = flaky_connect
    h.connector.transcoder_factory = lambda url: _FakeTranscoder(h.log, on_spawn=lambda t: t.exit())

    await h.run()

    assert h.delays == [1.0, 2.0, 1.0]


async def test_spawn_failure_closes_socket_and_retries():
    h = _Harness(max_sleeps=1)
    h.connector.transcoder_factory = lambda url: _FakeTranscoder(h.log, fail=True)

    await h.run()

    assert h.log == ["connect", "socket.close", ("sleep", 1.0)]
    assert h.connector.last_error == "ffmpeg not found"
    assert h.connector.sessions == 0


async def test_stop_while_streaming_tears_down_without_reconnect():
    h = _Harness(max_sleeps=100)
    h.connector.start()
    for _ in range(50):
        if h.connector.state == BridgeState.STREAMING:
            break
        await asyncio.sleep(0)
    assert h.connector.state == BridgeState.STREAMING

    await asyncio.wait_for(h.connector.stop(), timeout=2.0)

    assert h.connector.state == BridgeState.STOPPED
    assert h.delays == []
    assert "interrupt" in h.log
    assert h.log.index("interrupt") < h.log.index("socket.close")
    assert _FakeTranscoder.alive_count == 0


async def test_snapshot_reports_counters():
    h = _Harness(max_sleeps=1)
    h.connector.transcoder_factory = lambda url: _FakeTranscoder(h.log, on_spawn=lambda t: (t.feed(b"xyz"), t.exit()))

    await h.run()

    snap = h.connector.snapshot()
    assert snap["media_url"] == "rtmp://127.0.0.1/live/demo"
    assert snap["state"] == "stopped"
    assert snap["sessions"] == 1
    assert snap["frames_sent"] == 1
    assert snap["bytes_sent"] == 3
    assert snap["attempt"] == 2


def test_connector_requires_urls():
    with pytest.raises(ValueError):
        BridgeConnector("", "ws://relay/transcribe")
    with pytest.raises(ValueError):
        BridgeConnector("rtmp://h/live/a", " ")
