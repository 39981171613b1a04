"""In-process rate limiting keyed by (endpoint, user) identifiers.

Algorithms:
    - `fixed`: counts requests in aligned windows of `window_seconds`.
    - `sliding`: weighted two-window approximation. The effective count is
      `current + previous * (1 - elapsed / window)` where `elapsed` is the time
      spent in the current aligned window.

    One algorithm is chosen per deployment (`RATE_LIMIT_ALGORITHM`).

State lifecycle:
    Window state for an identifier is created on its first request and dropped
    once expired (fixed: one window, sliding: two windows). Expired state is
    swept lazily during `admit`; nothing needs explicit cleanup.

Denied requests are not counted.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from companionai.config import Settings


logger = logging.getLogger(__name__)


SWEEP_EVERY = 256
RETRY_MARGIN_SECONDS = 0.001


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    def retry_after(self, now: float) -> float:
        return max(0.0, self.reset_at - now)


@dataclass
class _WindowState:
    window_start: float
    current: int
    previous: int
    expires_at: float


class RateLimiter:
    """Thread-safe fixed/sliding window limiter."""

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 10.0,
        algorithm: str = "sliding",
        clock: Callable[[], float] = time.time,
    ):
        if algorithm not in ("fixed", "sliding"):
            raise ValueError(f"unknown rate limit algorithm: {algorithm!r}")
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = float(window_seconds)
        self.algorithm = algorithm
        self._clock = clock
        self._states: Dict[str, _WindowState] = {}
        self._lock = threading.Lock()
        self._calls = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiter":
        return cls(
            max_requests=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
            algorithm=settings.rate_limit_algorithm,
        )

    def now(self) -> float:
        return self._clock()

    def _window_start(self, now: float) -> float:
        return math.floor(now / self.window_seconds) * self.window_seconds

    def _ttl(self) -> float:
        return self.window_seconds * (2 if self.algorithm == "sliding" else 1)

    def _sweep(self, now: float) -> None:
        expired = [key for key, state in self._states.items() if state.expires_at <= now]
        for key in expired:
            del self._states[key]

    def _roll(self, state: _WindowState, window_start: float) -> None:
        """Advance `state` to the aligned window starting at `window_start`."""
        if window_start == state.window_start:
            return
        if window_start - state.window_start == self.window_seconds:
            state.previous = state.current
        else:
            state.previous = 0
        state.current = 0
        state.window_start = window_start

    def _sliding_retry_at(self, state: _WindowState, window_start: float) -> float:
        """Earliest time the weighted count drops below `max_requests`.

        Within the current window only the previous window's weight decays.
        Once the current window is full, the wait extends into the next one,
        where the current count becomes the decaying previous count.
        """
        window = self.window_seconds
        free = self.max_requests - state.current
        if free > 0:
            boundary = window_start + window * (1.0 - free / state.previous)
        else:
            boundary = window_start + window + window * (1.0 - self.max_requests / state.current)
        # The admission test is strict; step just past the boundary.
        return boundary + RETRY_MARGIN_SECONDS

    def admit(self, identifier: str) -> RateLimitDecision:
        """Count one request for `identifier` if it fits in the budget.

        Args:
            identifier: Usually `"{request url}-{user id}"`.

        Returns:
            `RateLimitDecision` with `allowed=False` when the request is denied.
        """
        now = self.now()
        window_start = self._window_start(now)
        reset_at = window_start + self.window_seconds

        with self._lock:
            self._calls += 1
            if self._calls % SWEEP_EVERY == 0:
                self._sweep(now)

            state = self._states.get(identifier)
            if state is None or state.expires_at <= now:
                state = _WindowState(
                    window_start=window_start,
                    current=0,
                    previous=0,
                    expires_at=window_start + self._ttl(),
                )
                self._states[identifier] = state
            else:
                self._roll(state, window_start)

            if self.algorithm == "sliding":
                elapsed = now - window_start
                weight = max(0.0, 1.0 - elapsed / self.window_seconds)
                used = state.current + state.previous * weight
            else:
                used = state.current

            if used >= self.max_requests:
                logger.info("Rate limit exceeded for %s", identifier)
                if self.algorithm == "sliding":
                    reset_at = self._sliding_retry_at(state, window_start)
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    reset_at=reset_at,
                )

            state.current += 1
            state.expires_at = window_start + self._ttl()
            remaining = max(0, int(self.max_requests - used - 1))

        return RateLimitDecision(
            allowed=True,
            limit=self.max_requests,
            remaining=remaining,
            reset_at=reset_at,
        )

    def active_identifiers(self) -> int:
        """Number of identifiers with unexpired window state."""
        with self._lock:
            self._sweep(self.now())
            return len(self._states)
