from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from otr_queue.config import Settings
from otr_queue.errors import ConfigurationError
from otr_queue.metrics import RATE_LIMIT_THROTTLED_TOTAL, RATE_LIMIT_WAIT_SECONDS


T = TypeVar("T")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

logger = logging.getLogger(__name__)


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def _positive_int(name: str, value: float) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be a positive number")
    if not math.isfinite(value) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive number")
    floored = math.floor(value)
    if floored <= 0:
        raise ConfigurationError(f"{name} must be at least 1 after flooring")
    return floored


@dataclass
class RateLimiterConfig:
    requests: int
    window_ms: int
    clock: Clock = field(default=monotonic_ms)


class FixedWindowRateLimiter:
    """Fixed-window limiter allowing up to ``requests`` tasks per ``window_ms``.

    Tasks run one at a time in the order they were scheduled, so callers get
    backpressure for free: a scheduled task's awaitable stays pending until
    every earlier task has finished and the window has room for it.

    The window resets by elapsed time only. Up to ``2 * requests`` tasks can
    therefore run back to back around a window boundary.

    ``clock`` returns milliseconds and defaults to ``time.monotonic()``
    scaled to ms, not wall-clock time, so setting the system clock back or
    forward neither stalls nor bursts the window. Inject any other
    millisecond source (e.g. ``lambda: time.time() * 1000``) if windows must
    line up with wall-clock time.

    Example:
        >>> limiter = FixedWindowRateLimiter(requests=2, window_ms=1000)
        >>> await limiter.schedule(lambda: publisher.publish({"beatmapId": 1}))
    """

    def __init__(
        self,
        requests: float,
        window_ms: float,
        clock: Optional[Clock] = None,
        *,
        label: str = "fixed-window-rate-limiter",
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.requests = _positive_int("requests", requests)
        self.window_ms = _positive_int("window_ms", window_ms)
        self.label = label
        self._clock: Clock = clock or monotonic_ms
        self._sleep = sleep
        self._window_start: Optional[float] = None
        self._executed_in_window = 0
        self._lane = asyncio.Lock()

    @classmethod
    def from_config(cls, config: RateLimiterConfig, *, label: str = "fixed-window-rate-limiter") -> "FixedWindowRateLimiter":
        return cls(config.requests, config.window_ms, config.clock, label=label)

    async def schedule(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run ``task`` once every earlier task is done and the window allows it.

        The task's result or exception is returned to this caller only; a
        failure does not affect tasks scheduled after it.
        """
        async with self._lane:
            await self._ensure_availability()
            return await task()

    async def _ensure_availability(self) -> None:
        waited_ms = 0.0
        while True:
            now = self._clock()

            if self._window_start is None or now - self._window_start >= self.window_ms:
                self._window_start = now
                self._executed_in_window = 0
                logger.debug("[%s] window reset window_ms=%d", self.label, self.window_ms)

            if self._executed_in_window < self.requests:
                self._executed_in_window += 1
                logger.debug(
                    "[%s] token consumed used=%d remaining=%d",
                    self.label,
                    self._executed_in_window,
                    self.requests - self._executed_in_window,
                )
                break

            wait_ms = max(0.0, self.window_ms - (now - self._window_start))
            logger.debug("[%s] sleeping for window refill wait_ms=%.1f", self.label, wait_ms)
            await self._sleep(wait_ms / 1000.0)
            waited_ms += wait_ms

        if waited_ms > 0:
            RATE_LIMIT_THROTTLED_TOTAL.labels(limiter=self.label).inc()
            RATE_LIMIT_WAIT_SECONDS.labels(limiter=self.label).observe(waited_ms / 1000.0)


def get_rate_limiter(settings: Settings, label: str = "publish") -> Optional[FixedWindowRateLimiter]:
    if not settings.publish_rate_limit_enabled:
        return None
    config = RateLimiterConfig(
        requests=settings.publish_rate_limit_requests,
        window_ms=settings.publish_rate_limit_window_ms,
    )
    return FixedWindowRateLimiter.from_config(config, label=label)
