from __future__ import annotations

import asyncio
import math
import time
from typing import Awaitable, Callable

from pagerpush.services.telemetry import increment_counter


def _calculate_tokens(
    *,
    tokens: float | None,
    last_ms: int | None,
    now_ms: int,
    rate: float,
    burst: int,
) -> float:
    # Refill tokens based on elapsed time while enforcing burst capacity.
    if tokens is None:
        tokens = float(burst)
    if last_ms is None:
        last_ms = now_ms
    if now_ms < last_ms:
        last_ms = now_ms
    delta_s = (now_ms - last_ms) / 1000.0
    tokens = min(float(burst), tokens + (delta_s * rate))
    return tokens


def _retry_after_ms(tokens: float, *, rate: float, cost: int) -> int:
    # Compute the wait from the token deficit and sustained rate.
    if tokens >= cost:
        return 0
    if rate <= 0:
        return 1000
    needed = cost - tokens
    return int(math.ceil((needed / rate) * 1000))


class TokenBucketLimiter:
    """Process-wide send throttle shared by every notification worker.

    ``acquire`` suspends the caller until a token is available; waiters are
    served in arrival order because the wait happens under the bucket lock.
    """

    def __init__(
        self,
        *,
        rate: float,
        burst: int | None = None,
        time_source: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._rate = float(rate)
        self._burst = max(1, int(burst if burst is not None else math.ceil(rate)))
        self._time = time_source or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._tokens: float | None = None
        self._last_ms: int | None = None
        self._lock = asyncio.Lock()

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def burst(self) -> int:
        return self._burst

    async def acquire(self, cost: int = 1) -> float:
        # Return the total seconds spent waiting so callers can log throttling.
        waited = 0.0
        async with self._lock:
            while True:
                now_ms = int(self._time() * 1000)
                tokens = _calculate_tokens(
                    tokens=self._tokens,
                    last_ms=self._last_ms,
                    now_ms=now_ms,
                    rate=self._rate,
                    burst=self._burst,
                )
                self._last_ms = now_ms
                if tokens >= cost:
                    self._tokens = tokens - cost
                    return waited
                self._tokens = tokens
                delay_s = _retry_after_ms(tokens, rate=self._rate, cost=cost) / 1000.0
                increment_counter("notification_rate_limited_total")
                await self._sleep(delay_s)
                waited += delay_s
