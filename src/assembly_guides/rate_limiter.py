"""Sliding-window request limiter, one per provider.

Each limiter keeps the timestamps of requests made inside the last
`window_ms` milliseconds. `acquire()` is the only call that suspends: it
sleeps until the oldest timestamp leaves the window, then records a new one.
Because check-and-record happens without an intervening await, concurrent
tasks on one event loop can never overshoot `max_requests`.

Usage:
    limiters = RateLimiterRegistry()
    await limiters.get("gemini").acquire()
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .logging_config import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_ms: int


DEFAULT_RATE_LIMITS = {
    "gemini": RateLimitConfig(max_requests=15, window_ms=60_000),
    "openai": RateLimitConfig(max_requests=30, window_ms=60_000),
    "openrouter": RateLimitConfig(max_requests=60, window_ms=60_000),
}

FALLBACK_RATE_LIMIT = RateLimitConfig(max_requests=10, window_ms=60_000)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class RateLimiter:
    def __init__(
        self,
        config: RateLimitConfig,
        clock: Clock = _monotonic_ms,
        sleep: Sleep = asyncio.sleep,
        name: str = "",
    ):
        self.config = config
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._timestamps: list[float] = []

    def _prune(self) -> float:
        now = self._clock()
        cutoff = now - self.config.window_ms
        self._timestamps = [t for t in self._timestamps if t > cutoff]
        return now

    def available_slots(self) -> int:
        self._prune()
        return max(0, self.config.max_requests - len(self._timestamps))

    def can_proceed(self) -> bool:
        return self.available_slots() > 0

    def wait_time_ms(self) -> float:
        """Milliseconds until a slot frees up (0 when one is free now)."""
        now = self._prune()
        if len(self._timestamps) < self.config.max_requests:
            return 0.0
        oldest = self._timestamps[0]
        return max(0.0, oldest + self.config.window_ms - now)

    def record(self) -> None:
        self._timestamps.append(self._clock())

    async def acquire(self) -> None:
        """Suspend until a slot is available, then consume it."""
        while not self.can_proceed():
            wait = self.wait_time_ms()
            logger.info(
                "Rate limit reached for %s, waiting %.0f ms", self.name or "provider", wait
            )
            # +1 ms so the oldest timestamp is strictly outside the window on wake
            await self._sleep((wait + 1) / 1000.0)
        self.record()

    def reset(self) -> None:
        self._timestamps.clear()


class RateLimiterRegistry:
    """One limiter per provider name, shared by every job in the process."""

    def __init__(
        self,
        limits: dict[str, RateLimitConfig] | None = None,
        clock: Clock = _monotonic_ms,
        sleep: Sleep = asyncio.sleep,
    ):
        self.limits = dict(DEFAULT_RATE_LIMITS if limits is None else limits)
        self._clock = clock
        self._sleep = sleep
        self._limiters: dict[str, RateLimiter] = {}

    def get(self, provider: str, config: RateLimitConfig | None = None) -> RateLimiter:
        """Return the limiter for `provider`, creating it on first use.

        `config` only applies when the limiter does not exist yet.
        """
        limiter = self._limiters.get(provider)
        if limiter is None:
            limiter = RateLimiter(
                config or self.limits.get(provider, FALLBACK_RATE_LIMIT),
                clock=self._clock,
                sleep=self._sleep,
                name=provider,
            )
            self._limiters[provider] = limiter
        return limiter

    def reset(self) -> None:
        for limiter in self._limiters.values():
            limiter.reset()
