# coding=utf-8
from __future__ import annotations

from typing import Any, Dict


class TranscriptPool:
    """
    Client-side transcript state built from relay events:
    - partial_text: latest in-progress hypothesis, replaced on every partial
    - final_text: committed utterances, appended and trimmed to max_words
    """

    def __init__(self, max_words: int = 150) -> None:
        self.max_words = max(1, int(max_words))
        self.partial_text = ""
        self.final_text = ""
        self.final_count = 0

    @property
    def text(self) -> str:
        return f"{self.final_text} {self.partial_text}".strip()

    def set_partial(self, text: str) -> None:
        self.partial_text = str(text or "").strip()

    def append_final(self, text: str) -> None:
        merged = f"{self.final_text} {str(text or '').strip()}".strip()
        words = merged.split()
        self.final_text = " ".join(words[-self.max_words:])
        self.partial_text = ""
        self.final_count += 1

    def apply(self, event: Dict[str, Any]) -> bool:
        if str(event.get("type", "")) != "transcript":
            return False
        text = str(event.get("transcript", "") or "").strip()
        if event.get("isPartial"):
            self.set_partial(text)
        else:
            self.append_final(text)
        return True

    def reset(self) -> None:
        self.partial_text = ""
        self.final_text = ""
        self.final_count = 0

    def snapshot(self) -> Dict[str, object]:
        return {
            "final_text": self.final_text,
            "partial_text": self.partial_text,
            "final_count": self.final_count,
            "word_count": len(self.final_text.split()),
        }
