"""
Rate Limiting
=============

Per-key sliding-window admission control for outbound model calls.

Each key (e.g. "model:gpt-4o" or "chat:<user>") keeps the timestamps of
its admitted requests inside the current window. A request is admitted
while fewer than max_requests timestamps remain in the window; otherwise
it is rejected with the time until the oldest one expires.

Store lifecycle:
    store = RateLimitStore(max_requests=60, window_seconds=60)
    store.start()        # schedules the periodic sweep (needs a running loop)
    ...
    decision = store.check("model:gpt-4o")
    ...
    store.close()        # stops the sweep and drops all entries

Expired timestamps are removed from a key when that key is checked, and
the periodic sweep (APScheduler interval job) removes empty keys so the
store stays bounded by the number of recently active keys. The hot path
never walks the whole store.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from taskpilot.utils.errors import RateLimitError
from taskpilot.utils.logger import Logger

logger = Logger("RateLimit")

SWEEP_JOB_ID = "rate-limit-sweep"


@dataclass(frozen=True)
class RateLimitDecision:
    """
    Outcome of a rate-limit check.

    Attributes:
        limited: True when the request was rejected
        remaining: Requests still allowed in the current window
        reset_ms: Milliseconds until a slot frees up (rejected) or the
            window length (admitted)
    """
    limited: bool
    remaining: int
    reset_ms: int


@dataclass
class _Entry:
    timestamps: list[float] = field(default_factory=list)


class RateLimitStore:
    """
    Process-wide sliding-window rate limiter.

    Safe to call from several tasks or threads sharing a key: every
    read-modify-write of an entry happens under one lock.

    Example:
        store = RateLimitStore(max_requests=2, window_seconds=1.0)
        store.check("k").limited   # False
        store.check("k").limited   # False
        store.check("k").limited   # True, reset_ms > 0
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: float = 60.0,
        cleanup_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the store.

        Args:
            max_requests: Default admissions per window
            window_seconds: Default window length
            cleanup_interval_seconds: Period of the background sweep
            clock: Monotonic time source in seconds
        """
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._scheduler: AsyncIOScheduler | None = None

    @classmethod
    def from_config(cls, config) -> "RateLimitStore":
        """Build a store from a RateLimitConfig section."""
        return cls(
            max_requests=config.max_requests,
            window_seconds=config.window_seconds,
            cleanup_interval_seconds=config.cleanup_interval_seconds,
        )

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    def start(self) -> None:
        """Schedule the periodic sweep. Must be called with a running event loop."""
        if self._scheduler is not None and self._scheduler.running:
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self.cleanup_interval_seconds),
            id=SWEEP_JOB_ID,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.debug(f"Sweep scheduled every {self.cleanup_interval_seconds:g}s")

    def close(self) -> None:
        """Stop the sweep and release all entries."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        with self._lock:
            self._entries.clear()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ==========================================================================
    # Admission
    # ==========================================================================

    def check(
        self,
        key: str,
        max_requests: int | None = None,
        window_seconds: float | None = None
    ) -> RateLimitDecision:
        """
        Admit or reject one request for a key.

        Args:
            key: Bucket identifier
            max_requests: Override of the default limit
            window_seconds: Override of the default window

        Returns:
            RateLimitDecision for this request
        """
        limit = max_requests if max_requests is not None else self.max_requests
        window = window_seconds if window_seconds is not None else self.window_seconds
        window_ms = int(window * 1000)

        with self._lock:
            now = self._clock()
            cutoff = now - window

            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry

            entry.timestamps = [t for t in entry.timestamps if t > cutoff]

            if len(entry.timestamps) >= limit:
                oldest = entry.timestamps[0]
                reset_ms = max(1, int((oldest + window - now) * 1000))
                return RateLimitDecision(limited=True, remaining=0, reset_ms=reset_ms)

            entry.timestamps.append(now)
            return RateLimitDecision(
                limited=False,
                remaining=limit - len(entry.timestamps),
                reset_ms=window_ms,
            )

    async def acquire(self, key: str) -> RateLimitDecision:
        """
        Admit a request or raise.

        Raises:
            RateLimitError: With retry_after in seconds when rejected
        """
        decision = self.check(key)
        if decision.limited:
            logger.warning(f"Rate limit hit for {key}, resets in {decision.reset_ms}ms")
            raise RateLimitError(key, retry_after=decision.reset_ms / 1000)
        return decision

    def sweep(self) -> int:
        """
        Drop expired timestamps and empty keys.

        Returns:
            Number of keys removed
        """
        removed = 0
        with self._lock:
            cutoff = self._clock() - self.window_seconds
            for key in list(self._entries):
                entry = self._entries[key]
                entry.timestamps = [t for t in entry.timestamps if t > cutoff]
                if not entry.timestamps:
                    del self._entries[key]
                    removed += 1
        if removed:
            logger.debug(f"Swept {removed} idle rate-limit keys")
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries
