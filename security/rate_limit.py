"""
Fixed-window rate limiting keyed by (identifier, action).

Buckets reset (not decrement) when their window elapses. The database store
is shared by every app instance; the memory store is process local. Elapsed
buckets carry no state worth keeping and are purged.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from models.rate_limit_bucket import RateLimitBucket
from security.errors import StorageUnavailable, retry_after_seconds
from utils.clock import utcnow

logger = logging.getLogger(__name__)

RESET_REQUEST = "password_reset_request"
RESET_COMPLETE = "password_reset_complete"
RESET_VERIFY = "password_reset_verify"

# action -> (max requests, window seconds)
DEFAULT_RATE_LIMITS = {
    RESET_REQUEST: (3, 15 * 60),
    RESET_COMPLETE: (10, 15 * 60),
    RESET_VERIFY: (20, 15 * 60),
}

# RateLimitBucket.identifier column size
MAX_IDENTIFIER_LENGTH = 255


def bucket_identifier(identifier: str) -> str:
    """
    Identifiers that would not fit the bucket column are replaced by a digest,
    keeping the ``kind:`` prefix so buckets stay readable.
    """
    if len(identifier) <= MAX_IDENTIFIER_LENGTH:
        return identifier
    kind = identifier.partition(":")[0][:32]
    digest = hashlib.sha256(identifier.encode("utf-8")).hexdigest()
    return f"{kind}:sha256:{digest}"


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_seconds: int

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: Optional[timedelta] = None

    @property
    def retry_after_seconds(self) -> int:
        return retry_after_seconds(self.retry_after)


ALLOWED = RateDecision(allowed=True)


class MemoryBucketStore:
    """Single-process buckets. Fine for one worker or for tests."""

    def __init__(self, max_entries: int = 10000):
        self._lock = Lock()
        # (identifier, action) -> (window_start, count, window)
        self._buckets: Dict[Tuple[str, str], Tuple[datetime, int, timedelta]] = {}
        self.max_entries = max_entries

    def hit(self, identifier: str, action: str, rule: RateLimitRule, now: datetime) -> RateDecision:
        key = (identifier, action)
        with self._lock:
            window_start, count, _ = self._buckets.get(key, (None, 0, rule.window))
            if window_start is None or now >= window_start + rule.window:
                if window_start is None and len(self._buckets) >= self.max_entries:
                    self._prune(now)
                self._buckets[key] = (now, 1, rule.window)
                return ALLOWED
            if count < rule.max_requests:
                self._buckets[key] = (window_start, count + 1, rule.window)
                return ALLOWED
            return RateDecision(allowed=False, retry_after=window_start + rule.window - now)

    def purge(self, rules: Dict[str, RateLimitRule], now: datetime) -> int:
        with self._lock:
            return self._prune(now)

    def _prune(self, now: datetime) -> int:
        # caller holds the lock
        elapsed = [key for key, (start, _, window) in self._buckets.items() if start + window <= now]
        for key in elapsed:
            del self._buckets[key]
        return len(elapsed)

    def __len__(self):
        with self._lock:
            return len(self._buckets)

    def clear(self):
        with self._lock:
            self._buckets.clear()


class DatabaseBucketStore:
    """
    Buckets in the primary database. Every transition is one conditional
    UPDATE, so concurrent instances never over-admit.
    """

    def hit(self, identifier: str, action: str, rule: RateLimitRule, now: datetime) -> RateDecision:
        cutoff = now - rule.window
        same_bucket = (RateLimitBucket.identifier == identifier, RateLimitBucket.action == action)

        try:
            for _ in range(2):
                # elapsed window: restart at count 1
                restarted = db.session.execute(
                    update(RateLimitBucket)
                    .where(*same_bucket, RateLimitBucket.window_start <= cutoff)
                    .values(
                        window_start=now,
                        request_count=1,
                        window_seconds=rule.window_seconds,
                        max_requests=rule.max_requests,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                if restarted:
                    db.session.commit()
                    return ALLOWED

                incremented = db.session.execute(
                    update(RateLimitBucket)
                    .where(
                        *same_bucket,
                        RateLimitBucket.window_start > cutoff,
                        RateLimitBucket.request_count < rule.max_requests,
                    )
                    .values(request_count=RateLimitBucket.request_count + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if incremented:
                    db.session.commit()
                    return ALLOWED

                window_start = db.session.execute(
                    select(RateLimitBucket.window_start).where(*same_bucket)
                ).scalar()
                if window_start is not None:
                    db.session.commit()
                    return RateDecision(allowed=False, retry_after=window_start + rule.window - now)

                db.session.add(RateLimitBucket(
                    identifier=identifier,
                    action=action,
                    window_start=now,
                    request_count=1,
                    window_seconds=rule.window_seconds,
                    max_requests=rule.max_requests,
                    updated_at=now,
                ))
                try:
                    db.session.commit()
                    return ALLOWED
                except IntegrityError:
                    # another request opened the bucket first
                    db.session.rollback()
            raise StorageUnavailable("rate limit bucket could not be created")
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Rate limit store failed for %s/%s: %s", action, identifier, exc)
            raise StorageUnavailable("rate limit store unavailable") from exc

    def purge(self, rules: Dict[str, RateLimitRule], now: datetime) -> int:
        """Deletes buckets whose window has elapsed."""
        try:
            deleted = 0
            for action, rule in rules.items():
                deleted += db.session.execute(
                    delete(RateLimitBucket)
                    .where(RateLimitBucket.action == action, RateLimitBucket.window_start <= now - rule.window)
                    .execution_options(synchronize_session=False)
                ).rowcount
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Purging rate limit buckets failed: %s", exc)
            raise StorageUnavailable("rate limit store unavailable") from exc
        return deleted


class RateLimiter:
    def __init__(self, store, rules: Dict[str, RateLimitRule] = None, clock=utcnow):
        self.store = store
        self.rules = rules or {
            action: RateLimitRule(max_requests, window_seconds)
            for action, (max_requests, window_seconds) in DEFAULT_RATE_LIMITS.items()
        }
        self.clock = clock

    @classmethod
    def from_config(cls, config, clock=utcnow):
        limits = dict(DEFAULT_RATE_LIMITS)
        limits.update(config.get("RATE_LIMITS") or {})
        rules = {
            action: RateLimitRule(int(max_requests), int(window_seconds))
            for action, (max_requests, window_seconds) in limits.items()
        }

        storage = (config.get("RATE_LIMIT_STORAGE") or "database").lower()
        if storage == "memory":
            store = MemoryBucketStore()
        elif storage == "database":
            store = DatabaseBucketStore()
        else:
            raise ValueError(f"Unknown RATE_LIMIT_STORAGE: {storage}")
        return cls(store, rules=rules, clock=clock)

    def allow(self, identifier: str, action: str) -> RateDecision:
        rule = self.rules.get(action)
        if rule is None:
            raise KeyError(f"No rate limit configured for action {action!r}")

        identifier = bucket_identifier(identifier)
        decision = self.store.hit(identifier, action, rule, self.clock())
        if not decision.allowed:
            logger.warning(
                "Rate limit hit: action=%s identifier=%s retry_after=%ds",
                action, identifier, decision.retry_after_seconds,
            )
        return decision

    def allow_all(self, identifiers: Iterable[str], action: str) -> RateDecision:
        """
        Counts the request against every identifier. Denied if any bucket
        denies; the longest retry-after wins.
        """
        denied = [d for d in (self.allow(i, action) for i in identifiers) if not d.allowed]
        if not denied:
            return ALLOWED
        return max(denied, key=lambda d: d.retry_after or timedelta(0))

    def purge_expired(self) -> int:
        deleted = self.store.purge(self.rules, self.clock())
        logger.info("Purged %d elapsed rate limit bucket(s)", deleted)
        return deleted
