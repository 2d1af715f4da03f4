from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from liverelay.streaming.transcript_pool import TranscriptPool


def _lcp_len(a: str, b: str) -> int:
    n = min(len(a), len(b))
    i = 0
    while i < n and a[i] == b[i]:
        i += 1
    return i


@dataclass
class RelaySelfcheckResult:
    counts: Dict[str, int]
    partial_count: int
    final_count: int
    partial_rewrites: int
    empty_transcripts: int
    errors: List[str]
    ai_answers: List[str]
    transcript: str
    examples: List[Dict[str, Any]] = field(default_factory=list)


def analyze_relay_events(events: Iterable[Dict[str, Any]], max_words: int = 150) -> RelaySelfcheckResult:
    counts: Dict[str, int] = {}
    pool = TranscriptPool(max_words=max_words)
    prev_partial = ""
    partial_count = 0
    final_count = 0
    rewrites = 0
    empties = 0
    errors: List[str] = []
    ai_answers: List[str] = []
    examples: List[Dict[str, Any]] = []

    for idx, msg in enumerate(events):
        msg_type = str(msg.get("type", "")).lower()
        counts[msg_type] = counts.get(msg_type, 0) + 1

        if msg_type == "error":
            errors.append(str(msg.get("message", "") or ""))
            continue
        if msg_type == "ai_answer":
            ai_answers.append(str(msg.get("text", "") or ""))
            continue
        if msg_type != "transcript":
            continue

        text = str(msg.get("transcript", "") or "").strip()
        if not text:
            empties += 1
            continue

        if msg.get("isPartial"):
            partial_count += 1
            if prev_partial:
                lcp = _lcp_len(prev_partial, text)
                threshold = max(4, int(len(prev_partial) * 0.25))
                if len(prev_partial) >= 20 and lcp < threshold:
                    rewrites += 1
                    if len(examples) < 8:
                        examples.append(
                            {
                                "kind": "partial_rewrite",
                                "index": idx,
                                "lcp": lcp,
                                "prev_chars": len(prev_partial),
                                "chars": len(text),
                                "text": text[:160],
                            }
                        )
            prev_partial = text
        else:
            final_count += 1
            prev_partial = ""
        pool.apply(msg)

    return RelaySelfcheckResult(
        counts=counts,
        partial_count=partial_count,
        final_count=final_count,
        partial_rewrites=rewrites,
        empty_transcripts=empties,
        errors=errors,
        ai_answers=ai_answers,
        transcript=pool.text,
        examples=examples,
    )


def summarize_result(result: RelaySelfcheckResult) -> str:
    lines = [
        "events=" + ",".join(f"{k}:{v}" for k, v in sorted(result.counts.items())),
        f"partials={result.partial_count}",
        f"finals={result.final_count}",
        f"partial_rewrites={result.partial_rewrites}",
        f"empty_transcripts={result.empty_transcripts}",
        f"errors={len(result.errors)}",
    ]
    for message in result.errors:
        lines.append(f"  ! {message}")
    lines.append(f"transcript={result.transcript}")
    for answer in result.ai_answers:
        lines.append(f"ai_answer={answer}")
    if result.examples:
        lines.append("examples:")
        for ex in result.examples:
            kind = ex.get("kind", "event")
            lines.append(f"  - {kind}: {ex}")
    return "\n".join(lines)
