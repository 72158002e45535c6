"""Request pacing: per-minute ceiling, randomized spacing, session rotation.

All times are milliseconds on a monotonic clock.  ``PacingPolicy`` only
decides; sleeping and bookkeeping belong to the SessionManager.
"""

from __future__ import annotations

import random
from collections import deque
from typing import TYPE_CHECKING

from ..types import PacingConfig

if TYPE_CHECKING:
    from .session import Session


class RequestLedger:
    """Dispatch timestamps inside a trailing window, oldest first."""

    def __init__(self, window_ms: int = 60_000) -> None:
        self.window_ms = window_ms
        self._times: deque[float] = deque()

    def prune(self, now: float) -> None:
        """Drop entries that are ``window_ms`` or older."""
        while self._times and now - self._times[0] >= self.window_ms:
            self._times.popleft()

    def record(self, now: float) -> None:
        self.prune(now)
        self._times.append(now)

    def recent(self, now: float) -> list[float]:
        """In-window timestamps at *now*, without mutating the ledger."""
        return [t for t in self._times if now - t < self.window_ms]

    def count(self, now: float) -> int:
        return len(self.recent(now))

    def oldest(self, now: float) -> float | None:
        recent = self.recent(now)
        return recent[0] if recent else None


class PacingPolicy:
    """Pure pacing decisions over a :class:`PacingConfig`.

    The random source is injected so tests can pin jitter to exact values.
    """

    def __init__(self, config: PacingConfig, rng: random.Random | None = None) -> None:
        self.config = config
        self._rng = rng or random.Random()

    def jitter(self, low: int, high: int) -> int:
        """Uniform integer in ``[low, high]``."""
        return self._rng.randint(low, high)

    def rate_limit_delay(self, now: float, ledger: RequestLedger) -> float:
        """Wait until the oldest in-window dispatch ages out, plus jitter."""
        if ledger.count(now) < self.config.max_requests_per_minute:
            return 0.0
        oldest = ledger.oldest(now)
        lo, hi = self.config.rate_limit_jitter_ms
        return max(0.0, ledger.window_ms - (now - oldest)) + self.jitter(lo, hi)

    def spacing_delay(self, now: float, last_dispatch: float | None) -> float:
        """Randomized minimum gap since the previous dispatch."""
        target = self.jitter(self.config.min_interval_ms, self.config.max_interval_ms)
        if last_dispatch is None:
            return 0.0
        elapsed = now - last_dispatch
        if elapsed >= target:
            return 0.0
        return target - elapsed

    def next_delay(
        self, now: float, ledger: RequestLedger, last_dispatch: float | None,
    ) -> float:
        """Total wait before the next dispatch may go out."""
        return self.rate_limit_delay(now, ledger) + self.spacing_delay(now, last_dispatch)

    def needs_rotation(self, now: float, session: Session | None) -> bool:
        if session is None:
            return False
        if session.request_count >= self.config.max_requests_per_session:
            return True
        return now - session.created_at > self.config.max_session_age_s * 1000

    def rotation_cooldown(self) -> int:
        lo, hi = self.config.rotation_cooldown_ms
        return self.jitter(lo, hi)
