"""
Progressive account lockout after consecutive failed logins.

State is derived from timestamps: an account is locked while
``lockout_until`` is in the future. Only ``record_failure``,
``record_success`` and ``unlock`` write; ``check_access`` is read only.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from models.lockout_state import LockoutState
from security.errors import StorageUnavailable, retry_after_seconds
from utils.clock import utcnow

logger = logging.getLogger(__name__)


class LockoutStatus(str, Enum):
    OPEN = "open"
    WARNED = "warned"
    LOCKED = "locked"


@dataclass(frozen=True)
class LockoutSnapshot:
    account_id: int
    failure_count: int = 0
    lockout_until: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    status: LockoutStatus = LockoutStatus.OPEN
    # True when the failure that produced this snapshot applied a lockout
    locked_now: bool = False

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "status": self.status.value,
            "failure_count": self.failure_count,
            "lockout_until": self.lockout_until.isoformat() if self.lockout_until else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
        }


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    retry_after: Optional[timedelta] = None

    @property
    def retry_after_seconds(self) -> int:
        return retry_after_seconds(self.retry_after)


class LockoutPolicy:
    def __init__(self, threshold: int = 5, base_seconds: int = 15 * 60,
                 multiplier: float = 2, max_seconds: int = 24 * 60 * 60, clock=utcnow):
        if threshold < 1:
            raise ValueError("Lockout threshold must be at least 1")
        self.threshold = threshold
        self.base_seconds = base_seconds
        self.multiplier = multiplier
        self.max_seconds = max_seconds
        self.clock = clock

    @classmethod
    def from_config(cls, config, clock=utcnow):
        return cls(
            threshold=int(config.get("LOCKOUT_THRESHOLD", 5)),
            base_seconds=int(config.get("LOCKOUT_BASE_SECONDS", 15 * 60)),
            multiplier=float(config.get("LOCKOUT_MULTIPLIER", 2)),
            max_seconds=int(config.get("LOCKOUT_MAX_SECONDS", 24 * 60 * 60)),
            clock=clock,
        )

    def lockout_duration(self, failure_count: int) -> Optional[timedelta]:
        """
        base * multiplier ** (failure_count - threshold), capped at max_seconds.
        None below the threshold.
        """
        if failure_count < self.threshold:
            return None

        seconds = self.base_seconds
        for _ in range(failure_count - self.threshold):
            if seconds >= self.max_seconds:
                break
            seconds *= self.multiplier
        return timedelta(seconds=min(seconds, self.max_seconds))

    def check_access(self, account_id: int) -> AccessDecision:
        now = self.clock()
        try:
            lockout_until = db.session.execute(
                select(LockoutState.lockout_until).where(LockoutState.user_id == account_id)
            ).scalar()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Lockout lookup failed for user %s: %s", account_id, exc)
            raise StorageUnavailable("lockout store unavailable") from exc

        if lockout_until is not None and lockout_until > now:
            return AccessDecision(allowed=False, retry_after=lockout_until - now)
        return AccessDecision(allowed=True)

    def snapshot(self, account_id: int) -> LockoutSnapshot:
        try:
            row = db.session.execute(
                select(LockoutState).where(LockoutState.user_id == account_id)
            ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageUnavailable("lockout store unavailable") from exc

        if row is None:
            return LockoutSnapshot(account_id=account_id)
        return self._snapshot(account_id, row.failure_count, row.lockout_until, row.last_failure_at)

    def record_failure(self, account_id: int) -> LockoutSnapshot:
        now = self.clock()
        increment = (
            update(LockoutState)
            .where(LockoutState.user_id == account_id)
            .values(
                failure_count=LockoutState.failure_count + 1,
                last_failure_at=now,
                updated_at=now,
            )
            .returning(LockoutState.failure_count, LockoutState.lockout_until)
            .execution_options(synchronize_session=False)
        )

        try:
            for _ in range(2):
                row = db.session.execute(increment).first()
                if row is not None:
                    failure_count, lockout_until = row
                    break

                # first failure for this account: materialize the row
                db.session.add(LockoutState(
                    user_id=account_id,
                    failure_count=1,
                    last_failure_at=now,
                    updated_at=now,
                ))
                try:
                    db.session.flush()
                except IntegrityError:
                    # a concurrent first failure created it; increment instead
                    db.session.rollback()
                    continue
                failure_count, lockout_until = 1, None
                break
            else:
                raise StorageUnavailable("could not materialize lockout state")

            duration = self.lockout_duration(failure_count)
            if duration is not None:
                lockout_until = now + duration
                db.session.execute(
                    update(LockoutState)
                    .where(LockoutState.user_id == account_id)
                    .values(lockout_until=lockout_until)
                    .execution_options(synchronize_session=False)
                )
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Recording failed login for user %s failed: %s", account_id, exc)
            raise StorageUnavailable("lockout store unavailable") from exc

        if duration is not None:
            logger.info(
                "User %s locked for %ds after %d consecutive failures",
                account_id, int(duration.total_seconds()), failure_count,
            )
        return self._snapshot(account_id, failure_count, lockout_until, now,
                              locked_now=duration is not None)

    def record_success(self, account_id: int) -> LockoutSnapshot:
        """Resets the failure counter. Returns the state as it was before."""
        return self._reset(account_id)

    def unlock(self, account_id: int) -> LockoutSnapshot:
        """Administrative unlock. Returns the state as it was before."""
        previous = self._reset(account_id)
        if previous.status is LockoutStatus.LOCKED:
            logger.info("User %s unlocked manually", account_id)
        return previous

    def _reset(self, account_id: int) -> LockoutSnapshot:
        now = self.clock()
        try:
            # touch first: takes the row lock and reports the pre-reset values
            previous = db.session.execute(
                update(LockoutState)
                .where(LockoutState.user_id == account_id)
                .values(updated_at=now)
                .returning(
                    LockoutState.failure_count,
                    LockoutState.lockout_until,
                    LockoutState.last_failure_at,
                )
                .execution_options(synchronize_session=False)
            ).first()

            if previous is None:
                db.session.rollback()
                return LockoutSnapshot(account_id=account_id)

            db.session.execute(
                update(LockoutState)
                .where(LockoutState.user_id == account_id)
                .values(failure_count=0, lockout_until=None)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Resetting lockout for user %s failed: %s", account_id, exc)
            raise StorageUnavailable("lockout store unavailable") from exc

        failure_count, lockout_until, last_failure_at = previous
        return self._snapshot(account_id, failure_count, lockout_until, last_failure_at, now=now)

    def _snapshot(self, account_id, failure_count, lockout_until, last_failure_at,
                  locked_now=False, now=None) -> LockoutSnapshot:
        now = now or self.clock()
        if lockout_until is not None and lockout_until > now:
            status = LockoutStatus.LOCKED
        elif failure_count:
            status = LockoutStatus.WARNED
        else:
            status = LockoutStatus.OPEN
        return LockoutSnapshot(
            account_id=account_id,
            failure_count=failure_count,
            lockout_until=lockout_until,
            last_failure_at=last_failure_at,
            status=status,
            locked_now=locked_now,
        )
