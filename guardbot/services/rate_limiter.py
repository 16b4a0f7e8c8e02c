from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from guardbot.models import RateLimitResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    """
    Per-actor cooldown and rolling quota in front of a bounded-concurrency task queue.

    check_and_consume() is synchronous so the quota slot is taken before the
    caller awaits anything; a burst of concurrent messages from one actor
    cannot all slip through while the first classification is in flight.
    """

    def __init__(
        self,
        concurrency: int,
        request_interval: float,
        daily_limit: int,
        daily_window: float,
    ):
        self._validate(
            concurrency=concurrency,
            request_interval=request_interval,
            daily_limit=daily_limit,
            daily_window=daily_window,
        )
        self.concurrency = int(concurrency)
        self.request_interval = float(request_interval)
        self.daily_limit = int(daily_limit)
        self.daily_window = float(daily_window)

        self._last_request_at: Dict[int, float] = {}
        self._timestamps: Dict[int, List[float]] = {}

        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._pending = 0
        self._running = 0

    @staticmethod
    def _validate(**values) -> None:
        for name, value in values.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"rate limiter: invalid {name}={value!r}")
            if not math.isfinite(value) or value <= 0:
                raise ValueError(f"rate limiter: invalid {name}={value!r}")

    def _prune(self, now: float, timestamps: List[float]) -> List[float]:
        # Timestamps are appended in order, so the first in-window entry splits the list
        for index, ts in enumerate(timestamps):
            if now - ts < self.daily_window:
                return timestamps[index:]
        return []

    def check_and_consume(self, actor_id: int, bypass: bool = False,
                          now: Optional[float] = None) -> RateLimitResult:
        if bypass:
            return RateLimitResult(allowed=True)

        now = time.time() if now is None else now

        last = self._last_request_at.get(actor_id)
        if last is not None:
            delta = now - last
            if delta < self.request_interval:
                seconds_left = math.ceil(self.request_interval - delta)
                return RateLimitResult(allowed=False, reason="cooldown", seconds_left=seconds_left)

        timestamps = self._prune(now, self._timestamps.get(actor_id, []))
        if len(timestamps) >= self.daily_limit:
            self._timestamps[actor_id] = timestamps
            until_reset = timestamps[0] + self.daily_window - now
            return RateLimitResult(allowed=False, reason="quota", seconds_until_reset=until_reset)

        timestamps.append(now)
        self._timestamps[actor_id] = timestamps
        self._last_request_at[actor_id] = now
        return RateLimitResult(allowed=True, remaining=max(self.daily_limit - len(timestamps), 0))

    async def enqueue(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run task once a concurrency slot is free. Its exception goes to this caller only."""
        self._pending += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._pending -= 1

        self._running += 1
        try:
            return await task()
        finally:
            self._running -= 1
            self._semaphore.release()

    def get_queue_size(self) -> int:
        return self._pending

    def get_running_count(self) -> int:
        return self._running

    def clear_user(self, actor_id: int) -> None:
        self._last_request_at.pop(actor_id, None)
        self._timestamps.pop(actor_id, None)

    def sweep(self, now: Optional[float] = None) -> int:
        """Forget actors whose cooldown and whole quota window have lapsed."""
        now = time.time() if now is None else now
        removed = 0
        for actor_id in list(self._timestamps.keys()):
            timestamps = self._prune(now, self._timestamps[actor_id])
            last = self._last_request_at.get(actor_id)
            if timestamps or (last is not None and now - last < self.request_interval):
                self._timestamps[actor_id] = timestamps
                continue
            self.clear_user(actor_id)
            removed += 1
        if removed:
            logger.debug(f"Rate limiter sweep forgot {removed} idle actor(s)")
        return removed

    def get_config(self) -> dict:
        return {
            "concurrency": self.concurrency,
            "request_interval": self.request_interval,
            "daily_limit": self.daily_limit,
            "daily_window": self.daily_window,
        }
