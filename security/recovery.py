"""
Password recovery orchestration.

Every call walks one ephemeral RecoverySession through the linear flow
rate-limit -> token operation -> audit. Steps never reorder or retry, and the
first failure ends the flow.

Requests for a reset look the same to the caller whether or not the account
exists or the request was throttled. For a known account the token is issued
and mailed on the notify pool, so the synchronous work matches the unknown
case. A completed reset also mails a "password changed" confirmation.
Completions only ever report success or "invalid or expired token".
"""
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional
from urllib.parse import urlencode

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.user import User
from security.errors import (
    AccountLocked,
    IllegalTransition,
    InvalidToken,
    RateLimited,
    StorageUnavailable,
    WeakCredential,
)
from security.lockout import LockoutPolicy, LockoutSnapshot, LockoutStatus
from security.password import hash_password
from security.password_policy import PasswordPolicy
from security.rate_limit import RESET_COMPLETE, RESET_REQUEST, RESET_VERIFY, RateLimiter
from security.session import revoke_all_sessions
from security.tokens import DEFAULT_RETENTION_SECONDS, TokenIssuer, TokenStore
from utils.audit import AuditAction, AuditEvent, AuditLogger, AuditOutcome
from utils.clock import utcnow
from utils.emailer import SmtpNotifier
from utils.request_meta import is_valid_email, normalize_email

logger = logging.getLogger(__name__)

GENERIC_REQUEST_MESSAGE = "If an account exists for that email, a password reset link has been sent."


class RecoveryState(str, Enum):
    REQUESTED = "requested"
    RATE_LIMIT_CHECKED = "rate_limit_checked"
    TOKEN_ISSUED = "token_issued"
    CONSUMPTION_ATTEMPTED = "consumption_attempted"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    ABANDONED = "abandoned"


_TRANSITIONS = {
    RecoveryState.REQUESTED: {
        RecoveryState.RATE_LIMIT_CHECKED,
        RecoveryState.BLOCKED,
        RecoveryState.FAILED,
    },
    RecoveryState.RATE_LIMIT_CHECKED: {
        RecoveryState.TOKEN_ISSUED,
        RecoveryState.CONSUMPTION_ATTEMPTED,
        RecoveryState.ABANDONED,
        RecoveryState.FAILED,
    },
    RecoveryState.TOKEN_ISSUED: {
        RecoveryState.CONSUMPTION_ATTEMPTED,
        RecoveryState.ABANDONED,
    },
    RecoveryState.CONSUMPTION_ATTEMPTED: {
        RecoveryState.COMPLETED,
        RecoveryState.FAILED,
    },
}

TERMINAL_STATES = {
    RecoveryState.COMPLETED,
    RecoveryState.FAILED,
    RecoveryState.BLOCKED,
    RecoveryState.ABANDONED,
}


@dataclass
class RecoverySession:
    """One in-flight recovery attempt. Never persisted."""

    state: RecoveryState = RecoveryState.REQUESTED
    account_id: Optional[int] = None
    token_id: Optional[int] = None
    expires_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    notification: Optional[Future] = None
    history: List[RecoveryState] = field(default_factory=lambda: [RecoveryState.REQUESTED])

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, state: RecoveryState) -> "RecoverySession":
        if state not in _TRANSITIONS.get(self.state, ()):
            raise IllegalTransition(f"{self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)
        return self

    def fail(self, reason: str) -> "RecoverySession":
        self.failure_reason = reason
        return self.advance(RecoveryState.FAILED)


def _log_delivery(future: Future) -> None:
    # undelivered (ok, error) results are logged by the notifier itself
    exc = future.exception()
    if exc is not None:
        logger.warning("Background recovery job raised: %s", exc)


class RecoverySessionManager:
    def __init__(self, issuer: TokenIssuer, store: TokenStore, lockout: LockoutPolicy,
                 limiter: RateLimiter, audit: AuditLogger, notifier, password_policy: PasswordPolicy,
                 reset_url: str, notify_executor: ThreadPoolExecutor = None,
                 session_revoker=revoke_all_sessions, clock=utcnow):
        self.issuer = issuer
        self.store = store
        self.lockout = lockout
        self.limiter = limiter
        self.audit = audit
        self.notifier = notifier
        self.password_policy = password_policy
        self.reset_url = reset_url
        self.notify_executor = notify_executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify")
        self.session_revoker = session_revoker
        self.clock = clock

    @classmethod
    def from_config(cls, config, clock=utcnow, notifier=None):
        return cls(
            issuer=TokenIssuer.from_config(config, clock=clock),
            store=TokenStore(clock=clock),
            lockout=LockoutPolicy.from_config(config, clock=clock),
            limiter=RateLimiter.from_config(config, clock=clock),
            audit=AuditLogger.from_config(config, clock=clock),
            notifier=notifier or SmtpNotifier.from_config(config),
            password_policy=PasswordPolicy.from_config(config),
            reset_url=config.get("PASSWORD_RESET_URL", "http://localhost:3000/reset-password"),
            notify_executor=ThreadPoolExecutor(
                max_workers=int(config.get("NOTIFY_WORKERS", 2)),
                thread_name_prefix="notify",
            ),
            clock=clock,
        )

    # ---- reset request ----

    def request_reset(self, email: str, ip: str = None, user_agent: str = None) -> RecoverySession:
        """
        Starts a recovery. The returned session is for internal use only;
        callers must answer with GENERIC_REQUEST_MESSAGE whatever its state.
        """
        session = RecoverySession()
        email = normalize_email(email)
        valid_email = is_valid_email(email)

        identifiers = [f"ip:{ip or 'unknown'}"]
        if valid_email:
            identifiers.insert(0, f"email:{email}")

        decision = self.limiter.allow_all(identifiers, RESET_REQUEST)
        if not decision.allowed:
            session.advance(RecoveryState.BLOCKED)
            self._audit(AuditAction.RECOVERY_REQUESTED, AuditOutcome.BLOCKED, None, ip, user_agent,
                        reason="rate_limited", retry_after=decision.retry_after_seconds)
            return session
        session.advance(RecoveryState.RATE_LIMIT_CHECKED)

        account = self._find_account(email) if valid_email else None
        if account is None:
            self._audit(AuditAction.RECOVERY_REQUESTED, AuditOutcome.SUCCESS, None, ip, user_agent,
                        account_found=False)
            return session.advance(RecoveryState.ABANDONED)

        account_id, to_address = account.id, account.email
        session.account_id = account_id
        self._audit(AuditAction.RECOVERY_REQUESTED, AuditOutcome.SUCCESS, account_id, ip, user_agent,
                    account_found=True)

        # the synchronous path does the same work as for an unknown account;
        # issuance and delivery finish on the notify pool
        session.notification = self._notify(
            self._issue_in_background, current_app._get_current_object(),
            session, to_address, ip, user_agent,
        )
        return session

    def _issue_in_background(self, app, session: RecoverySession, to_address: str,
                             ip: str = None, user_agent: str = None):
        account_id = session.account_id
        with app.app_context():
            issued = self.issuer.issue(account_id)
            try:
                session.token_id = self.store.save(account_id, issued.token_hash, issued.expires_at,
                                                   ip=ip, user_agent=user_agent)
            except StorageUnavailable:
                # nothing was issued; the caller already saw the generic answer
                session.fail("storage_unavailable")
                self._audit(AuditAction.TOKEN_ISSUED, AuditOutcome.FAILURE, account_id, ip, user_agent,
                            reason="storage_unavailable")
                return None

            session.expires_at = issued.expires_at
            session.advance(RecoveryState.TOKEN_ISSUED)
            self._audit(AuditAction.TOKEN_ISSUED, AuditOutcome.SUCCESS, account_id, ip, user_agent,
                        token_id=session.token_id, expires_at=issued.expires_at.isoformat())
            logger.info("Recovery token %s issued for user %s", session.token_id, account_id)

        return self.notifier.send_recovery_email(to_address, self.reset_url_for(issued.raw_token),
                                                 issued.expires_at)

    def reset_url_for(self, raw_token: str) -> str:
        separator = "&" if "?" in self.reset_url else "?"
        return f"{self.reset_url}{separator}{urlencode({'token': raw_token})}"

    # ---- reset completion ----

    def verify_token(self, raw_token: str, ip: str = None) -> int:
        """Checks a token without redeeming it. Raises InvalidToken or RateLimited."""
        decision = self.limiter.allow(f"ip:{ip or 'unknown'}", RESET_VERIFY)
        if not decision.allowed:
            raise RateLimited(decision.retry_after, RESET_VERIFY)
        return self.store.verify(raw_token)

    def complete_reset(self, raw_token: str, new_password: str,
                       ip: str = None, user_agent: str = None) -> RecoverySession:
        session = RecoverySession()

        decision = self.limiter.allow(f"ip:{ip or 'unknown'}", RESET_COMPLETE)
        if not decision.allowed:
            session.advance(RecoveryState.BLOCKED)
            self._audit(AuditAction.TOKEN_CONSUMPTION_FAILED, AuditOutcome.BLOCKED, None, ip, user_agent,
                        reason="rate_limited")
            raise RateLimited(decision.retry_after, RESET_COMPLETE)
        session.advance(RecoveryState.RATE_LIMIT_CHECKED)

        # checked before redemption so a weak password does not burn the token
        try:
            self.password_policy.enforce(new_password)
        except WeakCredential:
            session.fail("weak_credential")
            raise

        session.advance(RecoveryState.CONSUMPTION_ATTEMPTED)
        try:
            account_id = self.store.consume(raw_token)
        except InvalidToken as exc:
            session.fail(exc.reason)
            self._audit(AuditAction.TOKEN_CONSUMPTION_FAILED, AuditOutcome.FAILURE, exc.account_id,
                        ip, user_agent, reason=exc.reason)
            logger.warning("Recovery token rejected: reason=%s user=%s", exc.reason, exc.account_id)
            raise
        except StorageUnavailable:
            session.fail("storage_unavailable")
            raise

        session.account_id = account_id
        self._audit(AuditAction.TOKEN_CONSUMED, AuditOutcome.SUCCESS, account_id, ip, user_agent)

        try:
            to_address = self._change_credential(account_id, new_password)
            if to_address is None:
                session.fail("account_inactive")
                self._audit(AuditAction.CREDENTIAL_CHANGED, AuditOutcome.FAILURE, account_id, ip, user_agent,
                            reason="account_inactive")
                raise InvalidToken(account_id=account_id)

            previous = self.lockout.record_success(account_id)
            revoked = self._revoke_sessions(account_id)
        except StorageUnavailable:
            session.fail("storage_unavailable")
            raise

        self._audit(AuditAction.CREDENTIAL_CHANGED, AuditOutcome.SUCCESS, account_id, ip, user_agent,
                    revoked_sessions=revoked)
        if previous.status is LockoutStatus.LOCKED:
            self._audit(AuditAction.ACCOUNT_UNLOCKED, AuditOutcome.SUCCESS, account_id, ip, user_agent,
                        reason="password_reset")

        logger.info("Password reset completed for user %s (%d session(s) revoked)", account_id, revoked)
        session.notification = self._notify(self.notifier.send_password_changed_email, to_address, self.clock())
        return session.advance(RecoveryState.COMPLETED)

    # ---- login hook ----

    def ensure_login_allowed(self, account_id: int) -> None:
        decision = self.lockout.check_access(account_id)
        if not decision.allowed:
            raise AccountLocked(decision.retry_after)

    def record_login(self, account_id: int, success: bool,
                     ip: str = None, user_agent: str = None) -> LockoutSnapshot:
        if success:
            self.lockout.record_success(account_id)
            self._audit(AuditAction.LOGIN_SUCCEEDED, AuditOutcome.SUCCESS, account_id, ip, user_agent)
            return LockoutSnapshot(account_id=account_id)

        snap = self.lockout.record_failure(account_id)
        self._audit(AuditAction.LOGIN_FAILED, AuditOutcome.FAILURE, account_id, ip, user_agent,
                    failure_count=snap.failure_count)
        if snap.locked_now:
            self._audit(AuditAction.ACCOUNT_LOCKED, AuditOutcome.SUCCESS, account_id, ip, user_agent,
                        failure_count=snap.failure_count, lockout_until=snap.lockout_until.isoformat())
        return snap

    def unlock_account(self, account_id: int, unlocked_by: int = None,
                       ip: str = None, user_agent: str = None) -> LockoutSnapshot:
        previous = self.lockout.unlock(account_id)
        self._audit(AuditAction.ACCOUNT_UNLOCKED, AuditOutcome.SUCCESS, account_id, ip, user_agent,
                    reason="manual", unlocked_by=unlocked_by, was_locked=previous.status is LockoutStatus.LOCKED)
        return previous

    def purge_expired_tokens(self, retention_seconds: int = DEFAULT_RETENTION_SECONDS) -> int:
        return self.store.purge_expired(retention_seconds)

    def purge_rate_limit_buckets(self) -> int:
        return self.limiter.purge_expired()

    # ---- helpers ----

    def _find_account(self, email: str) -> Optional[User]:
        try:
            return User.query.filter(func.lower(User.email) == email, User.is_active.is_(True)).first()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Account lookup failed: %s", exc)
            raise StorageUnavailable("account store unavailable") from exc

    def _change_credential(self, account_id: int, new_password: str) -> Optional[str]:
        """Returns the account's email, or None when no active account was updated."""
        password_hash = hash_password(new_password)
        try:
            to_address = db.session.execute(
                update(User)
                .where(User.id == account_id, User.is_active.is_(True))
                .values(password_hash=password_hash, password_changed_at=self.clock())
                .returning(User.email)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Credential update failed for user %s: %s", account_id, exc)
            raise StorageUnavailable("account store unavailable") from exc
        return to_address

    def _revoke_sessions(self, account_id: int) -> int:
        try:
            return self.session_revoker(account_id, reason="password_reset")
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Session revocation failed for user %s: %s", account_id, exc)
            raise StorageUnavailable("session store unavailable") from exc

    def _notify(self, fn, *args) -> Future:
        future = self.notify_executor.submit(fn, *args)
        future.add_done_callback(_log_delivery)
        return future

    def _audit(self, action, outcome, account_id, ip, user_agent, **metadata) -> bool:
        return self.audit.record(AuditEvent(
            action=action,
            outcome=outcome,
            account_id=account_id,
            ip=ip,
            user_agent=user_agent,
            metadata=metadata,
        ))


def init_app(app, clock=None, notifier=None) -> RecoverySessionManager:
    manager = RecoverySessionManager.from_config(app.config, clock=clock or utcnow, notifier=notifier)
    app.extensions["recovery"] = manager
    return manager


def current_recovery() -> RecoverySessionManager:
    return current_app.extensions["recovery"]
