import io
import json

from liverelay.services.assistant import NO_ANSWER_TEXT, AIRequestHandler, ChatCompletionClient


class _RecordingBroadcaster:
    def __init__(self):
        self.sent = []

    def send(self, conn, event):
        self.sent.append((conn, event))
        return True


class _FakeClient:
    def __init__(self, answer="", error=None):
        self.answer = answer
        self.error = error
        self.calls = []

    def complete(self, system_prompt, user_text):
        self.calls.append((system_prompt, user_text))
        if self.error is not None:
            raise self.error
        return self.answer


class _FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_chat_url_resolution():
    assert ChatCompletionClient("https://api.openai.com", "m").chat_url == "https://api.openai.com/v1/chat/completions"
    assert ChatCompletionClient("http://h:8000/v1/", "m").chat_url == "http://h:8000/v1/chat/completions"
    assert ChatCompletionClient("http://h/v1/chat/completions", "m").chat_url == "http://h/v1/chat/completions"


def test_extract_content_handles_string_and_parts():
    c = ChatCompletionClient("http://h", "m")
    assert c._extract_content({"choices": [{"message": {"content": " hi "}}]}) == "hi"
    parts = {"choices": [{"message": {"content": [{"text": "a"}, "b", {"type": "x"}]}}]}
    assert c._extract_content(parts) == "ab"
    assert c._extract_content({"choices": []}) == ""


def test_complete_posts_chat_request(monkeypatch):
    captured = {}

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["auth"] = req.get_header("Authorization")
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return _FakeResponse(json.dumps({"choices": [{"message": {"content": "42"}}]}).encode("utf-8"))

    monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
    c = ChatCompletionClient("http://h/v1", "gpt-4o-mini", api_key="sk-test", timeout_sec=5, max_tokens=64)
    assert c.complete("sys", "what is six times seven") == "42"
    assert captured["url"] == "http://h/v1/chat/completions"
    assert captured["auth"] == "Bearer sk-test"
    assert captured["timeout"] == 5.0
    assert captured["body"]["model"] == "gpt-4o-mini"
    assert captured["body"]["max_tokens"] == 64
    assert captured["body"]["messages"] == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "what is six times seven"},
    ]


async def test_handler_replies_to_asking_connection():
    b = _RecordingBroadcaster()
    client = _FakeClient(answer=" Paris ")
    handler = AIRequestHandler(client, b, system_prompt="be brief")
    await handler.handle("conn-1", "  capital of France?  ")
    assert client.calls == [("be brief", "capital of France?")]
    assert b.sent == [("conn-1", {"type": "ai_answer", "text": "Paris"})]


async def test_handler_empty_answer_becomes_no_answer():
    b = _RecordingBroadcaster()
    await AIRequestHandler(_FakeClient(answer=""), b).handle("c", "hi")
    assert b.sent == [("c", {"type": "ai_answer", "text": NO_ANSWER_TEXT})]


async def test_handler_failure_is_reported_as_answer_text():
    b = _RecordingBroadcaster()
    await AIRequestHandler(_FakeClient(error=TimeoutError("timed out")), b).handle("c", "hi")
    assert b.sent == [("c", {"type": "ai_answer", "text": "AI failed: timed out"})]


async def test_handler_rejects_empty_or_non_string_text():
    b = _RecordingBroadcaster()
    client = _FakeClient(answer="x")
    handler = AIRequestHandler(client, b)
    await handler.handle("c", "   ")
    await handler.handle("c", None)
    await handler.handle("c", 12)
    assert client.calls == []
    assert b.sent == [("c", {"type": "error", "message": "ask_ai requires non-empty text"})] * 3
