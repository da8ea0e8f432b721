"""
Unit tests for the loop guard.
"""

import pytest

from service_admission.app.ratelimit.loop_guard import LoopGuard


class TestLoopGuard:
    """Test cases for LoopGuard."""

    @pytest.fixture
    def guard(self):
        return LoopGuard(fast_threshold_ms=1000, max_calls=5, state_ttl_ms=300_000)

    def test_detects_sixth_rapid_call(self, guard):
        """Calls 200ms apart: the first five pass, the sixth is a loop."""
        verdicts = [guard.check("u1", now=i * 200) for i in range(6)]

        assert verdicts == [False] * 5 + [True]

    def test_slow_calls_never_trip(self, guard):
        """Calls 2000ms apart reset the streak every time."""
        verdicts = [guard.check("u1", now=i * 2000) for i in range(20)]

        assert not any(verdicts)
        assert guard.state("u1").consecutive_fast_calls == 1

    def test_rejected_calls_keep_the_streak(self, guard):
        for i in range(6):
            guard.check("u1", now=i * 200)

        assert guard.check("u1", now=1_400) is True
        assert guard.state("u1").last_call_at == 1_400

    def test_slow_gap_resets_after_burst(self, guard):
        for i in range(6):
            guard.check("u1", now=i * 200)

        assert guard.check("u1", now=1_000 + 1_000) is False
        assert guard.state("u1").consecutive_fast_calls == 1

    def test_identities_tracked_separately(self, guard):
        for i in range(6):
            guard.check("u1", now=i * 200)

        assert guard.check("u2", now=1_000) is False

    def test_purge_expired(self, guard):
        guard.check("idle", now=0)
        guard.check("active", now=250_000)

        assert guard.purge_expired(now=300_001) == 1
        assert guard.state("idle") is None
        assert len(guard) == 1
