"""
Append-only security audit trail.

Writes go through their own session on a worker thread and are waited on for
a bounded time. A lost audit record never fails the operation being audited;
it is escalated on the ``security.audit`` logger at CRITICAL instead.
"""
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import db
from models.audit_log import AuditLog
from security.errors import AuditWriteFailed
from utils.clock import utcnow
from utils.request_meta import clip

logger = logging.getLogger(__name__)
alert_logger = logging.getLogger("security.audit")

ANONYMOUS = "anonymous"


class AuditAction(str, Enum):
    RECOVERY_REQUESTED = "recovery-requested"
    TOKEN_ISSUED = "token-issued"
    TOKEN_CONSUMED = "token-consumed"
    TOKEN_CONSUMPTION_FAILED = "token-consumption-failed"
    CREDENTIAL_CHANGED = "credential-changed"
    LOGIN_FAILED = "login-failed"
    LOGIN_SUCCEEDED = "login-succeeded"
    ACCOUNT_LOCKED = "account-locked"
    ACCOUNT_UNLOCKED = "account-unlocked"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class AuditEvent:
    action: AuditAction
    outcome: AuditOutcome
    account_id: Optional[int] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def actor(self) -> str:
        return str(self.account_id) if self.account_id is not None else ANONYMOUS


class AuditLogger:
    def __init__(self, timeout_seconds: float = 2.0, executor: ThreadPoolExecutor = None, clock=utcnow):
        self.timeout_seconds = timeout_seconds
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="audit")
        self.clock = clock

    @classmethod
    def from_config(cls, config, clock=utcnow):
        return cls(timeout_seconds=float(config.get("AUDIT_WRITE_TIMEOUT_SECONDS", 2.0)), clock=clock)

    def record(self, event: AuditEvent) -> bool:
        """
        Appends one event. Returns False (never raises) when the write failed
        or did not finish within the timeout.
        """
        values = dict(
            user_id=event.account_id,
            actor=event.actor,
            action=event.action.value,
            outcome=event.outcome.value,
            ip_address=clip(event.ip, 64),
            user_agent=clip(event.user_agent, 255),
            metadata_json=json.dumps(event.metadata, default=str, sort_keys=True) if event.metadata else None,
            created_at=self.clock(),
        )

        try:
            future = self.executor.submit(self._write, db.engine, values)
            future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            alert_logger.critical(
                "Audit write timed out after %.1fs: action=%s actor=%s outcome=%s",
                self.timeout_seconds, values["action"], values["actor"], values["outcome"],
            )
            return False
        except (AuditWriteFailed, RuntimeError) as exc:
            # RuntimeError: executor already shut down
            alert_logger.critical(
                "Audit write failed: action=%s actor=%s outcome=%s error=%s",
                values["action"], values["actor"], values["outcome"], exc,
            )
            return False
        except Exception as exc:
            alert_logger.critical(
                "Audit write raised unexpectedly: action=%s actor=%s outcome=%s error=%r",
                values["action"], values["actor"], values["outcome"], exc,
            )
            return False
        return True

    @staticmethod
    def _write(engine, values: dict) -> None:
        try:
            with Session(engine) as session:
                session.add(AuditLog(**values))
                session.commit()
        except SQLAlchemyError as exc:
            raise AuditWriteFailed(str(exc)) from exc

