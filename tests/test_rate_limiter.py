"""Tests for the rate limiter."""

import pytest

from companionai.config import Settings
from companionai.ratelimit.limiter import RateLimiter


class ManualClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestFixedWindow:

    def setup_method(self):
        self.clock = ManualClock(1000.0)
        self.limiter = RateLimiter(max_requests=3, window_seconds=10, algorithm="fixed", clock=self.clock)

    def test_denies_request_over_limit(self):
        results = [self.limiter.admit("url-user").allowed for _ in range(4)]

        assert results == [True, True, True, False]

    def test_allows_again_in_fresh_window(self):
        for _ in range(3):
            self.limiter.admit("url-user")
        assert self.limiter.admit("url-user").allowed is False

        self.clock.advance(10)

        assert self.limiter.admit("url-user").allowed is True

    def test_identifiers_are_independent(self):
        for _ in range(3):
            self.limiter.admit("url-alice")

        assert self.limiter.admit("url-alice").allowed is False
        assert self.limiter.admit("url-bob").allowed is True

    def test_remaining_and_reset(self):
        first = self.limiter.admit("url-user")

        assert first.remaining == 2
        assert first.reset_at == 1010.0
        assert first.retry_after(self.clock()) == 10.0

    def test_state_expires(self):
        self.limiter.admit("url-user")
        assert self.limiter.active_identifiers() == 1

        self.clock.advance(11)

        assert self.limiter.active_identifiers() == 0


class TestSlidingWindow:

    def setup_method(self):
        self.clock = ManualClock(1000.0)
        self.limiter = RateLimiter(max_requests=4, window_seconds=10, algorithm="sliding", clock=self.clock)

    def test_denies_request_over_limit(self):
        results = [self.limiter.admit("url-user").allowed for _ in range(5)]

        assert results == [True, True, True, True, False]

    def test_previous_window_still_counts_right_after_boundary(self):
        for _ in range(4):
            self.limiter.admit("url-user")

        # 1s into the next window the previous window weighs 0.9 -> 3.6 used.
        self.clock.advance(11)

        assert self.limiter.admit("url-user").allowed is True
        assert self.limiter.admit("url-user").allowed is False

    def test_previous_window_weight_decays(self):
        for _ in range(4):
            self.limiter.admit("url-user")

        # 5s into the next window: 4 * 0.5 = 2 used, two more fit.
        self.clock.advance(15)

        results = [self.limiter.admit("url-user").allowed for _ in range(3)]
        assert results == [True, True, False]

    def test_waiting_retry_after_is_enough_when_window_is_full(self):
        clock = ManualClock(59.0)
        limiter = RateLimiter(max_requests=5, window_seconds=60, algorithm="sliding", clock=clock)
        for _ in range(5):
            assert limiter.admit("url-user").allowed is True

        denied = limiter.admit("url-user")
        assert denied.allowed is False

        # The full window still weighs on the next one, so the wait crosses the boundary.
        clock.advance(denied.retry_after(clock()))

        assert limiter.admit("url-user").allowed is True

    def test_waiting_retry_after_is_enough_while_previous_window_decays(self):
        for _ in range(4):
            self.limiter.admit("url-user")
        self.clock.advance(11)
        assert self.limiter.admit("url-user").allowed is True

        denied = self.limiter.admit("url-user")
        assert denied.allowed is False
        wait = denied.retry_after(self.clock())
        assert 0 < wait < 10

        self.clock.advance(wait - 0.01)
        assert self.limiter.admit("url-user").allowed is False

        self.clock.advance(0.01)
        assert self.limiter.admit("url-user").allowed is True

    def test_allows_after_full_expiry(self):
        for _ in range(4):
            self.limiter.admit("url-user")
        assert self.limiter.admit("url-user").allowed is False

        self.clock.advance(20)

        assert self.limiter.admit("url-user").allowed is True


class TestConfiguration:

    def test_rejects_unknown_algorithm(self):
        with pytest.raises(ValueError):
            RateLimiter(algorithm="token-bucket")

    def test_from_settings(self):
        settings = Settings(rate_limit_requests=7, rate_limit_window_seconds=30, rate_limit_algorithm="fixed")
        limiter = RateLimiter.from_settings(settings)

        assert limiter.max_requests == 7
        assert limiter.window_seconds == 30.0
        assert limiter.algorithm == "fixed"

    def test_settings_reject_unknown_algorithm(self):
        with pytest.raises(ValueError):
            Settings(rate_limit_algorithm="leaky")
