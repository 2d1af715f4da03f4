# coding=utf-8
from __future__ import annotations


class ReconnectBackoff:
    """
    Exponential reconnect delay with a cap. Attempts count from 1.
    """

    def __init__(
        self,
        base_ms: int = 1000,
        cap_ms: int = 10000,
        max_shift: int = 6,
    ) -> None:
        self.base_ms = max(1, int(base_ms))
        self.cap_ms = max(self.base_ms, int(cap_ms))
        self.max_shift = max(0, int(max_shift))
        self.attempt = 1

    def delay_ms(self, attempt: int) -> int:
        n = max(1, int(attempt))
        return min(self.cap_ms, self.base_ms * 2 ** min(n - 1, self.max_shift))

    def next_delay_ms(self) -> int:
        delay = self.delay_ms(self.attempt)
        self.attempt += 1
        return delay

    def reset(self) -> None:
        self.attempt = 1
