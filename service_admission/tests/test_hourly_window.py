"""
Unit tests for the hourly window rate limiter.
"""

import pytest

from service_admission.app.ratelimit.hourly_window import HOUR_MS, HourlyWindowRateLimiter


class TestHourlyWindowRateLimiter:
    """Test cases for HourlyWindowRateLimiter."""

    @pytest.fixture
    def limiter(self):
        return HourlyWindowRateLimiter(per_identity_limit=1, global_limit=100)

    def test_first_call_allowed(self, limiter):
        assert limiter.check("u1", now=0).allowed is True

    def test_check_is_read_only(self, limiter):
        """Checking never consumes the window."""
        for _ in range(5):
            assert limiter.check("u1", now=0).allowed is True
        assert limiter.current_count("u1", now=0) == 0

    def test_limit_resets_next_hour(self, limiter):
        """Limit 1: allowed at 0s, rejected at 1s, allowed again at 3601s."""
        assert limiter.check_and_record("u1", now=0).allowed is True

        blocked = limiter.check_and_record("u1", now=1_000)
        assert blocked.allowed is False
        assert blocked.scope == "identity"
        assert blocked.count == 1
        assert blocked.limit == 1
        assert blocked.reset_at == HOUR_MS

        assert limiter.check_and_record("u1", now=3_601_000).allowed is True

    def test_rejected_call_not_counted(self, limiter):
        limiter.check_and_record("u1", now=0)
        limiter.check_and_record("u1", now=10)

        assert limiter.current_count("u1", now=10) == 1
        assert limiter.current_count(None, now=10) == 1

    def test_identities_limited_independently(self, limiter):
        limiter.check_and_record("u1", now=0)

        assert limiter.check("u2", now=0).allowed is True

    def test_global_limit_checked_first(self):
        limiter = HourlyWindowRateLimiter(per_identity_limit=1, global_limit=2)
        limiter.check_and_record("u1", now=0)
        limiter.check_and_record("u2", now=0)

        result = limiter.check("u1", now=0)

        assert result.allowed is False
        assert result.scope == "global"
        assert result.as_meta() == {
            "scope": "global",
            "current_count": 2,
            "limit": 2,
            "reset_at": HOUR_MS,
        }

    def test_record_bypasses_limit(self, limiter):
        """Forced calls still count toward the window."""
        limiter.record("u1", now=0)
        limiter.record("u1", now=0)

        assert limiter.current_count("u1", now=0) == 2
        assert limiter.check("u1", now=0).allowed is False

    def test_purge_expired(self, limiter):
        limiter.record("u1", now=0)
        assert len(limiter) == 2

        assert limiter.purge_expired(now=HOUR_MS) == 0
        assert limiter.purge_expired(now=HOUR_MS + 1) == 2
        assert len(limiter) == 0
