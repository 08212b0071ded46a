"""
agent/throttle.py — Capture Throttler

Gates observation capture. Screenshot APIs are expensive and quota-limited,
so captures are spaced at least min_interval_ms apart and a quota refusal
triggers exponential backoff:

    wait after the Nth consecutive refusal =
        min(base_backoff_ms * 2**(N-1), base_backoff_ms * max_backoff_multiplier)

A capture that fails for any reason yields None ("no observation this
step"). The loop carries on without a screenshot; nothing here raises.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Optional

from tabpilot.environment.base import Observation
from tabpilot.exceptions import CaptureRateLimitedError
from tabpilot.observability.logger import get_logger

log = get_logger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class CaptureBudget:
    """Per-run throttle state. Times are milliseconds on the throttler's clock."""
    min_interval_ms: int = 2500
    base_backoff_ms: int = 1000
    max_backoff_multiplier: int = 16
    max_observation_bytes: int = 100_000
    last_capture_at: Optional[float] = None
    backoff_multiplier: int = 1

    def next_backoff_ms(self) -> int:
        return self.base_backoff_ms * self.backoff_multiplier


class CaptureThrottler:
    """
    Usage:
        throttler = CaptureThrottler(CaptureBudget())
        observation = await throttler.capture(lambda: host.capture(handle))
    """

    def __init__(
        self,
        budget: Optional[CaptureBudget] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.budget = budget or CaptureBudget()
        self._clock = clock
        self._sleep = sleep

    def _now_ms(self) -> float:
        return self._clock() * 1000

    async def acquire(self) -> float:
        """Wait until a capture is allowed. Returns the milliseconds waited."""
        last = self.budget.last_capture_at
        if last is None:
            return 0.0
        elapsed = self._now_ms() - last
        wait_ms = self.budget.min_interval_ms - elapsed
        if wait_ms <= 0:
            return 0.0
        log.debug("throttle.wait", wait_ms=round(wait_ms))
        await self._sleep(wait_ms / 1000)
        return wait_ms

    async def capture(
        self,
        capture_fn: Callable[[], Awaitable[Observation]],
    ) -> Optional[Observation]:
        await self.acquire()
        budget = self.budget

        try:
            observation = await capture_fn()
        except CaptureRateLimitedError as e:
            backoff_ms = budget.next_backoff_ms()
            log.warning(
                "throttle.rate_limited",
                backoff_ms=backoff_ms,
                multiplier=budget.backoff_multiplier,
                error=str(e),
            )
            await self._sleep(backoff_ms / 1000)
            budget.backoff_multiplier = min(
                budget.backoff_multiplier * 2, budget.max_backoff_multiplier
            )
            budget.last_capture_at = self._now_ms()
            return None
        except Exception as e:
            log.warning("throttle.capture_failed", error=str(e), error_type=type(e).__name__)
            return None

        budget.last_capture_at = self._now_ms()
        budget.backoff_multiplier = 1

        if observation.encoded_size > budget.max_observation_bytes:
            log.warning(
                "throttle.observation_discarded",
                encoded_size=observation.encoded_size,
                limit=budget.max_observation_bytes,
            )
            return None
        return observation


__all__ = ["CaptureBudget", "CaptureThrottler", "Observation"]
