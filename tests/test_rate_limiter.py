"""
Tests for the fixed-window rate limiter.

Tests cover:
- Window counting and Retry-After computation
- Window expiry and bucket replacement
- Disabled limiter
- Opportunistic sweeping
- Client identity resolution
"""

import threading

import pytest

from rate_limiter import RateLimiter, client_identity


class TestRateLimiter:
    """Test fixed-window counting."""

    def test_allows_up_to_max_then_denies(self):
        limiter = RateLimiter(3, 60.0)

        for t in (0.0, 1.0, 2.0):
            assert limiter.check("1.2.3.4", now=t).allowed is True

        decision = limiter.check("1.2.3.4", now=10.0)
        assert decision.allowed is False
        # Window opened at t=0 and closes at t=60.
        assert decision.retry_after_s == 50

    def test_retry_after_rounds_up(self):
        limiter = RateLimiter(1, 60.0)
        limiter.check("a", now=0.0)
        decision = limiter.check("a", now=10.5)
        assert decision.allowed is False
        assert decision.retry_after_s == 50

    def test_window_expiry_resets_counter(self):
        limiter = RateLimiter(3, 60.0)
        for t in (0.0, 1.0, 2.0, 3.0):
            limiter.check("a", now=t)
        assert limiter.bucket("a").count == 4

        decision = limiter.check("a", now=60.5)
        assert decision.allowed is True
        bucket = limiter.bucket("a")
        assert bucket.count == 1
        assert bucket.reset_at == pytest.approx(120.5)

    def test_boundary_is_still_inside_window(self):
        """The bucket is only replaced once now is strictly past reset_at."""
        limiter = RateLimiter(1, 60.0)
        limiter.check("a", now=0.0)
        assert limiter.check("a", now=60.0).allowed is False
        assert limiter.check("a", now=60.001).allowed is True

    def test_identities_are_independent(self):
        limiter = RateLimiter(1, 60.0)
        assert limiter.check("a", now=0.0).allowed is True
        assert limiter.check("b", now=0.0).allowed is True
        assert limiter.check("a", now=1.0).allowed is False
        assert limiter.check("b", now=1.0).allowed is False

    @pytest.mark.parametrize("max_requests,window_s", [(0, 60.0), (-1, 60.0), (3, 0.0), (3, -5.0)])
    def test_disabled_limiter_passes_everything(self, max_requests, window_s):
        limiter = RateLimiter(max_requests, window_s)
        assert limiter.enabled is False
        for t in range(100):
            assert limiter.check("a", now=float(t)).allowed is True
        assert len(limiter) == 0

    def test_uses_injected_clock(self):
        now = [100.0]
        limiter = RateLimiter(1, 10.0, clock=lambda: now[0])
        assert limiter.check("a").allowed is True
        assert limiter.check("a").allowed is False
        now[0] = 111.0
        assert limiter.check("a").allowed is True

    def test_sweep_drops_only_expired_buckets(self):
        limiter = RateLimiter(5, 10.0, sweep_threshold=3)
        limiter.check("old-1", now=0.0)
        limiter.check("old-2", now=0.0)
        limiter.check("fresh", now=15.0)
        assert len(limiter) == 3

        # Fourth identity pushes the mapping over the threshold.
        limiter.check("new", now=16.0)
        assert limiter.bucket("old-1") is None
        assert limiter.bucket("old-2") is None
        assert limiter.bucket("fresh") is not None
        assert limiter.bucket("new") is not None

    def test_concurrent_increments_are_not_lost(self):
        limiter = RateLimiter(10_000, 60.0)
        per_thread = 500

        def hammer():
            for _ in range(per_thread):
                limiter.check("same", now=1.0)

        threads = [threading.Thread(target=hammer) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert limiter.bucket("same").count == 8 * per_thread


class TestClientIdentity:
    """Test identity resolution order."""

    def test_prefers_cf_connecting_ip(self):
        headers = {"cf-connecting-ip": "9.9.9.9", "x-forwarded-for": "1.1.1.1"}
        assert client_identity(headers, "127.0.0.1") == "9.9.9.9"

    def test_first_forwarded_for_entry(self):
        headers = {"x-forwarded-for": " 1.1.1.1 , 2.2.2.2"}
        assert client_identity(headers, "127.0.0.1") == "1.1.1.1"

    def test_falls_back_to_peer(self):
        assert client_identity({}, "10.0.0.7") == "10.0.0.7"

    def test_unknown_when_nothing_known(self):
        assert client_identity({}, None) == "unknown"
        assert client_identity({"x-forwarded-for": ""}, "") == "unknown"
