from __future__ import annotations

import asyncio
import math
import time
from typing import Callable


class TokenBucketLimiter:
    """Token bucket shared by every chunk upload.

    ``capacity`` is both the bucket size and the refill rate in bytes/second.
    The limiter never queues: it tells the caller how long to sleep and the
    chunk-concurrency bound keeps callers from piling up.
    """

    def __init__(
        self,
        bytes_per_second: int = 0,
        enabled: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self.capacity = 0
        self.tokens = 0.0
        self.last_refill = clock()
        self.enabled = enabled
        self.set_rate(bytes_per_second)
        self.tokens = float(self.capacity)

    def set_rate(self, bytes_per_second: int) -> None:
        self.capacity = max(0, int(bytes_per_second))
        self.tokens = min(self.tokens, float(self.capacity))

    def set_enabled(self, enabled: bool) -> None:
        if enabled and not self.enabled:
            self.reset()
        self.enabled = enabled

    def is_enabled(self) -> bool:
        return self.enabled and self.capacity > 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.tokens + elapsed * self.capacity, float(self.capacity))
            self.last_refill = now

    def request_bytes(self, num_bytes: int) -> int:
        """Debit ``num_bytes`` and return how many milliseconds to wait first."""
        if not self.is_enabled() or num_bytes <= 0:
            return 0
        self._refill()
        if self.tokens >= num_bytes:
            self.tokens -= num_bytes
            return 0
        wait_ms = math.ceil((num_bytes - self.tokens) / self.capacity * 1000)
        self.tokens = 0.0
        return wait_ms

    async def acquire(self, num_bytes: int) -> int:
        wait_ms = self.request_bytes(num_bytes)
        if wait_ms > 0:
            await asyncio.sleep(wait_ms / 1000)
        return wait_ms

    def available_tokens(self) -> int:
        self._refill()
        return int(self.tokens)

    def reset(self) -> None:
        self.tokens = float(self.capacity)
        self.last_refill = self._clock()
