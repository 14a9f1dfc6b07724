"""
Recovery token issuance and storage.

Only a SHA-256 digest of each token is stored. Redemption is a single
conditional UPDATE, so two requests racing with the same token can never
both succeed.
"""
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased

from models import db
from models.recovery_token import PasswordResetToken
from security.errors import (
    InvalidToken,
    StorageUnavailable,
    TokenAlreadyConsumed,
    TokenExpired,
    TokenNotFound,
    TokenSuperseded,
)
from utils.clock import utcnow
from utils.request_meta import clip

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32  # 256 bits of entropy
DEFAULT_TTL_SECONDS = 60 * 60
DEFAULT_RETENTION_SECONDS = 24 * 60 * 60


def hash_token(raw_token: str) -> str:
    # SHA-256 is fine for high-entropy random tokens
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class IssuedToken:
    raw_token: str
    token_hash: str
    expires_at: datetime


class TokenIssuer:
    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock=utcnow):
        if ttl_seconds <= 0:
            raise ValueError("Token TTL must be positive")
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    @classmethod
    def from_config(cls, config, clock=utcnow):
        return cls(
            ttl_seconds=int(config.get("RECOVERY_TOKEN_TTL_SECONDS", DEFAULT_TTL_SECONDS)),
            clock=clock,
        )

    def issue(self, account_id: int) -> IssuedToken:
        """
        Generates a fresh token for an already resolved account.
        Persisting it is the TokenStore's job.
        """
        if account_id is None:
            raise ValueError("Token must be issued for a resolved account")

        # secrets uses the OS CSPRNG; failures propagate, there is no fallback
        raw_token = secrets.token_urlsafe(TOKEN_BYTES)
        return IssuedToken(
            raw_token=raw_token,
            token_hash=hash_token(raw_token),
            expires_at=self.clock() + timedelta(seconds=self.ttl_seconds),
        )


class TokenStore:
    def __init__(self, clock=utcnow):
        self.clock = clock

    def save(self, account_id: int, token_hash: str, expires_at: datetime,
             ip: Optional[str] = None, user_agent: Optional[str] = None) -> int:
        """
        Stores a new token and supersedes every other live token of the account,
        in one transaction. Older rows are kept for audit continuity.
        """
        now = self.clock()
        try:
            superseded = db.session.execute(
                update(PasswordResetToken)
                .where(
                    PasswordResetToken.user_id == account_id,
                    PasswordResetToken.consumed_at.is_(None),
                    PasswordResetToken.superseded_at.is_(None),
                )
                .values(superseded_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount

            row = PasswordResetToken(
                user_id=account_id,
                token_hash=token_hash,
                created_at=now,
                expires_at=expires_at,
                ip_address=clip(ip, 64),
                user_agent=clip(user_agent, 255),
            )
            db.session.add(row)
            db.session.flush()
            token_id = row.id
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Could not store recovery token for user %s: %s", account_id, exc)
            raise StorageUnavailable("recovery token store unavailable") from exc

        if superseded:
            logger.info("Superseded %d older recovery token(s) for user %s", superseded, account_id)
        return token_id

    def consume(self, raw_token: str) -> int:
        """
        Redeems a token exactly once and returns the owning account id.
        Raises an InvalidToken subclass describing why redemption failed.
        """
        token_hash = hash_token(raw_token or "")
        now = self.clock()
        tokens = PasswordResetToken.__table__
        newer = aliased(PasswordResetToken)

        stmt = (
            update(PasswordResetToken)
            .where(
                PasswordResetToken.token_hash == token_hash,
                PasswordResetToken.consumed_at.is_(None),
                PasswordResetToken.superseded_at.is_(None),
                PasswordResetToken.expires_at > now,
                # only the latest token of an account is redeemable
                ~select(newer.id)
                .where(newer.user_id == PasswordResetToken.user_id, newer.id > PasswordResetToken.id)
                .correlate(tokens)
                .exists(),
            )
            .values(consumed_at=now)
            .returning(PasswordResetToken.user_id)
            .execution_options(synchronize_session=False)
        )

        try:
            account_id = db.session.execute(stmt).scalar()
            if account_id is not None:
                db.session.commit()
                return account_id

            db.session.rollback()
            failure = self._classify(token_hash, now)
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Recovery token consumption failed on storage: %s", exc)
            raise StorageUnavailable("recovery token store unavailable") from exc

        raise failure

    def verify(self, raw_token: str) -> int:
        """Read-only validity check; never consumes the token."""
        token_hash = hash_token(raw_token or "")
        now = self.clock()
        try:
            row = self._find(token_hash)
            failure = self._failure_for(row, now)
            account_id = row.user_id if row is not None else None
            db.session.rollback()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Recovery token lookup failed on storage: %s", exc)
            raise StorageUnavailable("recovery token store unavailable") from exc

        if failure is not None:
            raise failure
        return account_id

    def purge_expired(self, retention_seconds: int = DEFAULT_RETENTION_SECONDS) -> int:
        """Deletes tokens that expired more than ``retention_seconds`` ago."""
        cutoff = self.clock() - timedelta(seconds=retention_seconds)
        try:
            deleted = db.session.execute(
                delete(PasswordResetToken)
                .where(PasswordResetToken.expires_at < cutoff)
                .execution_options(synchronize_session=False)
            ).rowcount
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StorageUnavailable("recovery token store unavailable") from exc

        logger.info("Purged %d recovery token(s) expired before %s", deleted, cutoff.isoformat())
        return deleted

    def _find(self, token_hash: str) -> Optional[PasswordResetToken]:
        return db.session.execute(
            select(PasswordResetToken).where(PasswordResetToken.token_hash == token_hash)
        ).scalar_one_or_none()

    def _has_newer(self, row: PasswordResetToken) -> bool:
        newer_id = db.session.execute(
            select(PasswordResetToken.id)
            .where(PasswordResetToken.user_id == row.user_id, PasswordResetToken.id > row.id)
            .limit(1)
        ).scalar()
        return newer_id is not None

    def _failure_for(self, row: Optional[PasswordResetToken], now: datetime) -> Optional[InvalidToken]:
        if row is None:
            return TokenNotFound()
        if row.consumed_at is not None:
            return TokenAlreadyConsumed(account_id=row.user_id)
        if row.superseded_at is not None or self._has_newer(row):
            return TokenSuperseded(account_id=row.user_id)
        if row.expires_at <= now:
            return TokenExpired(account_id=row.user_id)
        return None

    def _classify(self, token_hash: str, now: datetime) -> InvalidToken:
        row = self._find(token_hash)
        failure = self._failure_for(row, now)
        account_id = row.user_id if row is not None else None
        db.session.rollback()
        # the conditional update lost a race we can no longer observe
        return failure or InvalidToken(account_id=account_id)
