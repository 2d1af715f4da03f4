# coding=utf-8
from __future__ import annotations

import asyncio
import json
import logging
import urllib.request
from typing import Any, Dict

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an on-screen assistant that helps the user follow what they are hearing and seeing right now.

Your input is one of:
- a live speech-to-text transcript of a meeting or interview
- text extracted by OCR from the user's screen
- a short question from the user

Rules:
1. Work out the context from the input before answering.
2. If the transcript contains a question, answer that question directly.
3. Explain OCR text (code, errors, formulas, documents) in plain terms.
4. Keep answers short unless the user asks for detail. Use bullet points and short paragraphs.
5. Start with the answer itself, no preamble.
6. If the input is unclear, ask one short clarifying question.
7. Never invent facts. If there is not enough to go on, say "I don't have enough info - please capture more."
"""

NO_ANSWER_TEXT = "No answer"


class ChatCompletionClient:
    """
    Minimal client for an OpenAI-compatible Chat Completions HTTP API.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str = "",
        timeout_sec: float = 30.0,
        max_tokens: int = 512,
    ) -> None:
        self.base_url = str(base_url or "").strip()
        if not self.base_url:
            raise ValueError("ai api base_url is empty")
        self.model = str(model or "").strip()
        if not self.model:
            raise ValueError("ai api model is empty")
        self.api_key = str(api_key or "").strip()
        self.timeout_sec = max(1.0, float(timeout_sec))
        self.max_tokens = max(16, int(max_tokens))

        normalized = self.base_url.rstrip("/")
        if normalized.endswith("/chat/completions"):
            self.chat_url = normalized
        elif normalized.endswith("/v1"):
            self.chat_url = f"{normalized}/chat/completions"
        else:
            self.chat_url = f"{normalized}/v1/chat/completions"

    def _extract_content(self, payload: Dict[str, Any]) -> str:
        choices = payload.get("choices")
        if isinstance(choices, list) and choices:
            message = choices[0].get("message", {}) if isinstance(choices[0], dict) else {}
            content = message.get("content")
            if isinstance(content, str):
                return content.strip()
            if isinstance(content, list):
                chunks = []
                for item in content:
                    if isinstance(item, str):
                        chunks.append(item)
                    elif isinstance(item, dict):
                        txt = item.get("text")
                        if isinstance(txt, str):
                            chunks.append(txt)
                return "".join(chunks).strip()
        return ""

    def complete(self, system_prompt: str, user_text: str) -> str:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": str(system_prompt or "")},
                {"role": "user", "content": str(user_text or "")},
            ],
            "max_tokens": self.max_tokens,
            "stream": False,
        }
        data = json.dumps(body, ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        req = urllib.request.Request(self.chat_url, data=data, headers=headers, method="POST")
        with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
        return self._extract_content(json.loads(raw))


class AIRequestHandler:
    """
    Answers ask_ai messages on the connection that asked. No retries.
    """

    def __init__(self, client: Any, broadcaster: Any, system_prompt: str = SYSTEM_PROMPT) -> None:
        self.client = client
        self.broadcaster = broadcaster
        self.system_prompt = system_prompt

    async def handle(self, conn: Any, text: Any) -> None:
        user_text = text.strip() if isinstance(text, str) else ""
        if not user_text:
            self.broadcaster.send(conn, {"type": "error", "message": "ask_ai requires non-empty text"})
            return

        peer = getattr(conn, "peer", "unknown")
        logger.info("ask_ai peer=%s chars=%d", peer, len(user_text))
        try:
            answer = await asyncio.to_thread(self.client.complete, self.system_prompt, user_text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("ask_ai failed peer=%s err=%s", peer, e)
            self.broadcaster.send(conn, {"type": "ai_answer", "text": f"AI failed: {e}"})
            return
        self.broadcaster.send(conn, {"type": "ai_answer", "text": str(answer or "").strip() or NO_ANSWER_TEXT})
