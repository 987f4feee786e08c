from __future__ import annotations

import asyncio
import random
import time
from collections import deque
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable

WINDOW_MS = 60_000


def _now_ms() -> int:
    return int(time.time() * 1000)


class SlidingWindowRateLimiter:
    """Requests-per-minute limiter over a 60s sliding window."""

    def __init__(self, rpm: int = 25, clock: Callable[[], int] = _now_ms):
        self.rpm = max(1, rpm)
        self._clock = clock
        self._log: deque[int] = deque()

    def check_rate_limit(self) -> int:
        """Milliseconds to wait before the next request is allowed (0 when free)."""
        now = self._clock()
        window_start = now - WINDOW_MS
        while self._log and self._log[0] < window_start:
            self._log.popleft()
        if len(self._log) >= self.rpm:
            return max(0, self._log[0] + WINDOW_MS - now + 100)
        return 0

    def record(self) -> None:
        self._log.append(self._clock())

    async def acquire(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        """Wait until the window has room, then reserve a slot.

        No await between the final check and the record.
        """
        while (wait_ms := self.check_rate_limit()) > 0:
            await sleep(wait_ms / 1000)
        self.record()


def parse_retry_after_ms(header: str | None, now: float | None = None) -> int | None:
    """Retry-After as delta-seconds or an HTTP date, in milliseconds."""
    if not header:
        return None
    value = header.strip()
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return int(seconds * 1000) if seconds >= 0 else None
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    current = time.time() if now is None else now
    return max(0, int((when.timestamp() - current) * 1000))


def backoff_delay_ms(attempt: int, retry_after_ms: int | None = None, jitter: Callable[[], int] | None = None) -> int:
    """Exponential backoff from 500ms with up to 250ms jitter, never below Retry-After."""
    jitter_ms = jitter() if jitter else random.randint(0, 250)
    exponential = 500 * 2 ** (attempt - 1)
    return max(exponential + jitter_ms, retry_after_ms or 0)
