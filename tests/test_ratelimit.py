"""Tests for the fixed-window RateLimiter."""

from __future__ import annotations

from unittest.mock import patch

from relay.ratelimit import RateLimiter


class TestCheck:
    def test_allows_up_to_limit(self):
        limiter = RateLimiter()
        with patch("time.time", return_value=1000.0):
            results = [limiter.check("1:2:messages", 3, 10_000).allowed for _ in range(4)]
        assert results == [True, True, True, False]

    def test_denial_reports_time_until_reset(self):
        limiter = RateLimiter()
        with patch("time.time", return_value=1000.0):
            limiter.check("k", 1, 10_000)
        with patch("time.time", return_value=1004.0):
            decision = limiter.check("k", 1, 10_000)
        assert not decision.allowed
        assert decision.retry_after_ms == 6000

    def test_window_resets(self):
        limiter = RateLimiter()
        with patch("time.time", return_value=1000.0):
            limiter.check("k", 1, 10_000)
            assert not limiter.check("k", 1, 10_000).allowed
        with patch("time.time", return_value=1010.0):
            assert limiter.check("k", 1, 10_000).allowed

    def test_keys_are_independent(self):
        limiter = RateLimiter()
        with patch("time.time", return_value=1000.0):
            assert limiter.check("a", 1, 10_000).allowed
            assert limiter.check("b", 1, 10_000).allowed
            assert not limiter.check("a", 1, 10_000).allowed


class TestSweep:
    def test_sweep_drops_only_old_buckets(self):
        limiter = RateLimiter()
        with patch("time.time", return_value=1000.0):
            limiter.check("old", 5, 1000)
        with patch("time.time", return_value=1400.0):
            limiter.check("fresh", 5, 1000)
            evicted = limiter.sweep(max_age_ms=60_000)
        assert evicted == 1
        assert len(limiter) == 1

    def test_sweep_empty(self):
        assert RateLimiter().sweep() == 0
