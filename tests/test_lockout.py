"""Tests for progressive account lockout."""
from datetime import timedelta

import pytest

from models import LockoutState
from security.lockout import LockoutPolicy, LockoutStatus


@pytest.fixture
def policy(app, clock):
    return LockoutPolicy(threshold=5, base_seconds=15 * 60, multiplier=2, max_seconds=24 * 3600, clock=clock)


def _fail(policy, account_id, times):
    snap = None
    for _ in range(times):
        snap = policy.record_failure(account_id)
    return snap


class TestLockoutDuration:
    def test_below_threshold_has_no_lockout(self, policy):
        assert policy.lockout_duration(4) is None

    def test_doubles_per_failure_past_threshold(self, policy):
        assert policy.lockout_duration(5) == timedelta(minutes=15)
        assert policy.lockout_duration(6) == timedelta(minutes=30)
        assert policy.lockout_duration(7) == timedelta(hours=1)

    def test_capped_at_max(self, policy):
        assert policy.lockout_duration(12) == timedelta(hours=24)
        assert policy.lockout_duration(500) == timedelta(hours=24)

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            LockoutPolicy(threshold=0)


class TestLockoutPolicy:
    def test_new_account_is_open(self, policy, user):
        assert policy.check_access(user.id).allowed
        assert policy.snapshot(user.id).status is LockoutStatus.OPEN

    def test_failures_below_threshold_warn(self, policy, user):
        snap = _fail(policy, user.id, 4)
        assert snap.failure_count == 4
        assert snap.status is LockoutStatus.WARNED
        assert not snap.locked_now
        assert policy.check_access(user.id).allowed

    def test_fifth_failure_locks_for_fifteen_minutes(self, policy, user, clock):
        snap = _fail(policy, user.id, 5)

        assert snap.locked_now
        assert snap.status is LockoutStatus.LOCKED
        assert snap.lockout_until == clock() + timedelta(minutes=15)

        decision = policy.check_access(user.id)
        assert not decision.allowed
        assert decision.retry_after_seconds == 15 * 60

    def test_failure_after_expiry_escalates(self, policy, user, clock):
        start = clock()
        _fail(policy, user.id, 5)
        clock.advance(minutes=16)

        assert policy.check_access(user.id).allowed
        snap = policy.record_failure(user.id)

        assert snap.failure_count == 6
        assert snap.locked_now
        assert snap.lockout_until == start + timedelta(minutes=16) + timedelta(minutes=30)

    def test_lockout_expires_on_its_own(self, policy, user, clock):
        _fail(policy, user.id, 5)
        clock.advance(minutes=15)
        assert policy.check_access(user.id).allowed
        # the counter is not reset by expiry alone
        assert policy.snapshot(user.id).failure_count == 5

    def test_check_access_does_not_mutate(self, policy, user, session):
        _fail(policy, user.id, 3)
        for _ in range(5):
            policy.check_access(user.id)

        session.expire_all()
        assert LockoutState.query.filter_by(user_id=user.id).one().failure_count == 3

    def test_success_resets_counter(self, policy, user):
        _fail(policy, user.id, 4)
        previous = policy.record_success(user.id)

        assert previous.failure_count == 4
        snap = policy.snapshot(user.id)
        assert snap.failure_count == 0
        assert snap.status is LockoutStatus.OPEN

        # the next streak starts from zero
        assert not _fail(policy, user.id, 4).locked_now

    def test_success_without_state_is_noop(self, policy, user):
        previous = policy.record_success(user.id)
        assert previous.status is LockoutStatus.OPEN
        assert LockoutState.query.filter_by(user_id=user.id).first() is None

    def test_unlock_clears_active_lockout(self, policy, user):
        _fail(policy, user.id, 5)
        previous = policy.unlock(user.id)

        assert previous.status is LockoutStatus.LOCKED
        assert policy.check_access(user.id).allowed
        assert policy.snapshot(user.id).lockout_until is None

    def test_accounts_are_independent(self, policy, user, other_user):
        _fail(policy, user.id, 5)
        assert not policy.check_access(user.id).allowed
        assert policy.check_access(other_user.id).allowed

    def test_from_config(self, app, clock):
        policy = LockoutPolicy.from_config({"LOCKOUT_THRESHOLD": 3, "LOCKOUT_BASE_SECONDS": 60}, clock=clock)
        assert policy.lockout_duration(3) == timedelta(minutes=1)
        assert policy.lockout_duration(4) == timedelta(minutes=2)
