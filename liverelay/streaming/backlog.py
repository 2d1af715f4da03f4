# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BacklogDecision:
    lagging: bool
    backlog_sec: float
    reason: str


class BacklogMonitor:
    """
    Duration-based view of the audio backlog waiting for the recognizer.

    Observation only: a lagging recognizer is reported, never throttled.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        sample_width: int = 2,
        warn_backlog_sec: float = 3.0,
    ) -> None:
        self.sample_rate = max(1, int(sample_rate))
        self.sample_width = max(1, int(sample_width))
        self.warn_backlog_sec = max(0.2, float(warn_backlog_sec))

    def bytes_to_sec(self, backlog_bytes: int) -> float:
        samples = max(0, int(backlog_bytes)) // self.sample_width
        return float(samples) / float(self.sample_rate)

    def evaluate(self, backlog_bytes: int) -> BacklogDecision:
        sec = self.bytes_to_sec(backlog_bytes)
        if sec >= self.warn_backlog_sec:
            return BacklogDecision(lagging=True, backlog_sec=sec, reason="lagging")
        return BacklogDecision(lagging=False, backlog_sec=sec, reason="normal")
