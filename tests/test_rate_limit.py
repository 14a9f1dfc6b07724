"""Tests for the fixed-window rate limiter."""
from datetime import timedelta

import pytest

from models import RateLimitBucket
from security.rate_limit import (
    RESET_REQUEST,
    DatabaseBucketStore,
    MemoryBucketStore,
    RateLimiter,
    RateLimitRule,
    bucket_identifier,
)


@pytest.fixture(params=["memory", "database"])
def limiter(request, app, clock):
    store = MemoryBucketStore() if request.param == "memory" else DatabaseBucketStore()
    return RateLimiter(store, rules={RESET_REQUEST: RateLimitRule(3, 15 * 60)}, clock=clock)


class TestRateLimiter:
    def test_fourth_request_in_window_is_denied(self, limiter):
        decisions = [limiter.allow("email:a@example.com", RESET_REQUEST) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert decisions[-1].retry_after_seconds == 15 * 60

    def test_retry_after_counts_down(self, limiter, clock):
        for _ in range(3):
            limiter.allow("ip:10.0.0.1", RESET_REQUEST)
        clock.advance(minutes=10)

        decision = limiter.allow("ip:10.0.0.1", RESET_REQUEST)
        assert not decision.allowed
        assert decision.retry_after == timedelta(minutes=5)

    def test_window_resets_instead_of_decrementing(self, limiter, clock):
        for _ in range(4):
            limiter.allow("ip:10.0.0.1", RESET_REQUEST)
        clock.advance(minutes=15)

        # a full fresh window
        decisions = [limiter.allow("ip:10.0.0.1", RESET_REQUEST) for _ in range(4)]
        assert [d.allowed for d in decisions] == [True, True, True, False]

    def test_identifiers_are_independent(self, limiter):
        for _ in range(3):
            limiter.allow("ip:10.0.0.1", RESET_REQUEST)

        assert not limiter.allow("ip:10.0.0.1", RESET_REQUEST).allowed
        assert limiter.allow("ip:10.0.0.2", RESET_REQUEST).allowed

    def test_unknown_action(self, limiter):
        with pytest.raises(KeyError):
            limiter.allow("ip:10.0.0.1", "delete_everything")

    def test_allow_all_counts_every_identifier(self, limiter):
        for _ in range(3):
            assert limiter.allow_all(["email:a@example.com", "ip:10.0.0.1"], RESET_REQUEST).allowed

        # the IP is exhausted, so a fresh email from it is still denied
        decision = limiter.allow_all(["email:b@example.com", "ip:10.0.0.1"], RESET_REQUEST)
        assert not decision.allowed

    def test_allow_all_reports_longest_wait(self, limiter, clock):
        for _ in range(3):
            limiter.allow("ip:10.0.0.1", RESET_REQUEST)
        clock.advance(minutes=5)
        for _ in range(3):
            limiter.allow("email:a@example.com", RESET_REQUEST)

        decision = limiter.allow_all(["ip:10.0.0.1", "email:a@example.com"], RESET_REQUEST)
        assert decision.retry_after == timedelta(minutes=15)


class TestDatabaseBucketStore:
    def test_one_row_per_identifier_and_action(self, app, clock):
        limiter = RateLimiter(DatabaseBucketStore(), rules={RESET_REQUEST: RateLimitRule(3, 60)}, clock=clock)
        for _ in range(5):
            limiter.allow("ip:10.0.0.1", RESET_REQUEST)

        rows = RateLimitBucket.query.all()
        assert len(rows) == 1
        # denied requests are not counted past the limit
        assert rows[0].request_count == 3

    def test_from_config_merges_overrides(self, app, clock):
        limiter = RateLimiter.from_config(
            {"RATE_LIMIT_STORAGE": "memory", "RATE_LIMITS": {RESET_REQUEST: (1, 60)}},
            clock=clock,
        )
        assert isinstance(limiter.store, MemoryBucketStore)
        assert limiter.rules[RESET_REQUEST] == RateLimitRule(1, 60)
        assert len(limiter.rules) == 3

    def test_unknown_storage_rejected(self, clock):
        with pytest.raises(ValueError):
            RateLimiter.from_config({"RATE_LIMIT_STORAGE": "redis"}, clock=clock)


class TestBucketIdentifier:
    def test_short_identifier_is_kept(self):
        assert bucket_identifier("ip:10.0.0.1") == "ip:10.0.0.1"

    def test_long_identifier_is_hashed_to_fit(self):
        long_email = "email:" + "a" * 240 + "@example.com"
        capped = bucket_identifier(long_email)

        assert len(capped) <= 255
        assert capped.startswith("email:sha256:")
        assert capped == bucket_identifier(long_email)
        assert capped != bucket_identifier(long_email + "x")

    def test_long_identifier_is_limited_in_database(self, app, clock):
        limiter = RateLimiter(DatabaseBucketStore(), rules={RESET_REQUEST: RateLimitRule(3, 60)}, clock=clock)
        identifier = "email:" + "b" * 300 + "@example.com"

        decisions = [limiter.allow(identifier, RESET_REQUEST) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        row = RateLimitBucket.query.one()
        assert len(row.identifier) <= 255


class TestPurgeExpired:
    def _count(self, limiter):
        if isinstance(limiter.store, MemoryBucketStore):
            return len(limiter.store)
        return RateLimitBucket.query.count()

    def test_elapsed_buckets_are_deleted(self, limiter, clock):
        limiter.allow("ip:10.0.0.1", RESET_REQUEST)
        limiter.allow("email:a@example.com", RESET_REQUEST)
        clock.advance(days=30)

        assert limiter.purge_expired() == 2
        assert self._count(limiter) == 0

    def test_live_bucket_is_kept(self, limiter, clock):
        limiter.allow("ip:10.0.0.1", RESET_REQUEST)
        clock.advance(minutes=15)
        for _ in range(3):
            limiter.allow("ip:10.0.0.2", RESET_REQUEST)

        assert limiter.purge_expired() == 1
        assert self._count(limiter) == 1
        # the surviving bucket still carries its count
        assert not limiter.allow("ip:10.0.0.2", RESET_REQUEST).allowed

    def test_memory_store_prunes_when_full(self, clock):
        store = MemoryBucketStore(max_entries=2)
        rule = RateLimitRule(3, 60)
        store.hit("ip:1", RESET_REQUEST, rule, clock())
        store.hit("ip:2", RESET_REQUEST, rule, clock())
        clock.advance(minutes=2)

        store.hit("ip:3", RESET_REQUEST, rule, clock())
        assert len(store) == 1

    def test_cli_purges_buckets(self, app, recovery, clock):
        recovery.limiter.allow("ip:10.0.0.1", RESET_REQUEST)
        clock.advance(days=1)

        result = app.test_cli_runner().invoke(args=["purge-rate-limits"])

        assert result.exit_code == 0
        assert "Deleted 1 elapsed rate limit bucket(s)" in result.output
        assert RateLimitBucket.query.count() == 0
