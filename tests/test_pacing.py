"""Tests for RequestLedger and PacingPolicy."""

import random

import pytest

from iflow_bridge.core.pacing import PacingPolicy, RequestLedger
from iflow_bridge.core.session import Session
from iflow_bridge.types import PacingConfig


class _FixedRandom(random.Random):
    """randint always returns the low bound plus a fixed offset (clamped)."""

    def __init__(self, offset: int = 0) -> None:
        super().__init__(0)
        self.offset = offset

    def randint(self, a, b):
        return min(a + self.offset, b)


def _session(count=0, created_at=0.0) -> Session:
    return Session(backend=None, model="glm-5", created_at=created_at, number=1, request_count=count)


class TestRequestLedger:
    def test_prune_drops_entries_at_window_edge(self):
        ledger = RequestLedger(window_ms=1000)
        ledger.record(0)
        ledger.record(500)
        ledger.prune(1000)
        assert ledger.recent(1000) == [500]

    def test_reads_do_not_mutate(self):
        ledger = RequestLedger(window_ms=1000)
        ledger.record(0)
        assert ledger.count(5000) == 0
        assert ledger.oldest(5000) is None
        # The stale entry is still stored until the next prune/record.
        assert ledger.count(10) == 1

    def test_oldest_in_window(self):
        ledger = RequestLedger(window_ms=60_000)
        for t in (0, 10_000, 20_000):
            ledger.record(t)
        assert ledger.oldest(65_000) == 10_000
        assert ledger.count(65_000) == 2

    def test_record_prunes(self):
        ledger = RequestLedger(window_ms=100)
        ledger.record(0)
        ledger.record(200)
        assert list(ledger._times) == [200]


class TestRateLimitDelay:
    def test_below_ceiling_no_wait(self):
        policy = PacingPolicy(PacingConfig(max_requests_per_minute=3), _FixedRandom())
        ledger = RequestLedger()
        ledger.record(0)
        ledger.record(1)
        assert policy.rate_limit_delay(2, ledger) == 0

    def test_at_ceiling_waits_for_oldest_plus_jitter(self):
        config = PacingConfig(max_requests_per_minute=2, rate_limit_jitter_ms=(1000, 5000))
        policy = PacingPolicy(config, _FixedRandom(offset=500))
        ledger = RequestLedger()
        ledger.record(10_000)
        ledger.record(20_000)
        # oldest ages out at 70_000; jitter 1500
        assert policy.rate_limit_delay(30_000, ledger) == 40_000 + 1500

    def test_jitter_within_bounds(self):
        config = PacingConfig(max_requests_per_minute=1, rate_limit_jitter_ms=(1000, 5000))
        policy = PacingPolicy(config, random.Random(7))
        ledger = RequestLedger()
        ledger.record(0)
        for _ in range(50):
            delay = policy.rate_limit_delay(0, ledger)
            assert 61_000 <= delay <= 65_000


class TestSpacingDelay:
    def test_first_dispatch_waits_nothing(self):
        policy = PacingPolicy(PacingConfig(), random.Random(1))
        assert policy.spacing_delay(100, None) == 0

    def test_waits_remaining_target(self):
        config = PacingConfig(min_interval_ms=300, max_interval_ms=1500)
        policy = PacingPolicy(config, _FixedRandom(offset=200))
        # target 500, elapsed 100
        assert policy.spacing_delay(1100, 1000) == 400

    def test_elapsed_past_target(self):
        config = PacingConfig(min_interval_ms=300, max_interval_ms=1500)
        policy = PacingPolicy(config, _FixedRandom(offset=1200))
        assert policy.spacing_delay(3000, 1000) == 0

    @pytest.mark.parametrize("seed", range(5))
    def test_realized_gap_at_least_minimum(self, seed):
        config = PacingConfig(min_interval_ms=300, max_interval_ms=1500)
        policy = PacingPolicy(config, random.Random(seed))
        delay = policy.spacing_delay(1000, 1000)
        assert 300 <= delay <= 1500


class TestNextDelay:
    def test_rate_wait_and_spacing_add_up(self):
        config = PacingConfig(
            min_interval_ms=300, max_interval_ms=1500,
            max_requests_per_minute=1, rate_limit_jitter_ms=(1000, 5000),
        )
        policy = PacingPolicy(config, _FixedRandom())
        ledger = RequestLedger()
        ledger.record(0)
        # rate: 60_000 + 1000; spacing: 300 since last dispatch at 0
        assert policy.next_delay(0, ledger, 0) == 61_000 + 300


class TestRotation:
    def test_no_session_no_rotation(self):
        policy = PacingPolicy(PacingConfig())
        assert not policy.needs_rotation(0, None)

    def test_request_count_reached(self):
        policy = PacingPolicy(PacingConfig(max_requests_per_session=50))
        assert not policy.needs_rotation(0, _session(count=49))
        assert policy.needs_rotation(0, _session(count=50))

    def test_age_exceeded(self):
        policy = PacingPolicy(PacingConfig(max_session_age_s=1800))
        assert not policy.needs_rotation(1_800_000, _session(created_at=0))
        assert policy.needs_rotation(1_800_001, _session(created_at=0))

    def test_cooldown_range(self):
        policy = PacingPolicy(PacingConfig(rotation_cooldown_ms=(2000, 5000)), random.Random(3))
        for _ in range(50):
            assert 2000 <= policy.rotation_cooldown() <= 5000
