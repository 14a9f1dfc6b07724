"""
Typed failures of the account security subsystem.

The precise class is kept for audit logs and internal logging. Routes only
ever expose ``public_message``, so callers cannot tell the token failure
modes apart.
"""
import math
from datetime import timedelta
from typing import List, Optional

INVALID_TOKEN_MESSAGE = "Invalid or expired token"


def retry_after_seconds(retry_after: Optional[timedelta]) -> int:
    if retry_after is None:
        return 0
    return max(1, math.ceil(retry_after.total_seconds()))


class SecurityError(Exception):
    public_message = "Request could not be processed"


class RateLimited(SecurityError):
    public_message = "Too many requests. Try again later."

    def __init__(self, retry_after: timedelta, action: str = None):
        super().__init__(f"rate limited on {action or 'request'}")
        self.retry_after = retry_after
        self.action = action

    @property
    def retry_after_seconds(self) -> int:
        return retry_after_seconds(self.retry_after)


class AccountLocked(SecurityError):
    public_message = "Account temporarily locked. Try again later."

    def __init__(self, retry_after: timedelta):
        super().__init__("account locked")
        self.retry_after = retry_after

    @property
    def retry_after_seconds(self) -> int:
        return retry_after_seconds(self.retry_after)


class InvalidToken(SecurityError):
    public_message = INVALID_TOKEN_MESSAGE
    reason = "invalid"

    def __init__(self, account_id: Optional[int] = None):
        super().__init__(self.reason)
        # owner of the matched row, if any; only used for auditing
        self.account_id = account_id


class TokenNotFound(InvalidToken):
    reason = "not_found"


class TokenExpired(InvalidToken):
    reason = "expired"


class TokenAlreadyConsumed(InvalidToken):
    reason = "already_consumed"


class TokenSuperseded(InvalidToken):
    reason = "superseded"


class WeakCredential(SecurityError):
    public_message = "Password does not meet policy"

    def __init__(self, details: List[str]):
        super().__init__("; ".join(details))
        self.details = details


class StorageUnavailable(SecurityError):
    public_message = "Service temporarily unavailable"


class AuditWriteFailed(SecurityError):
    pass


class IllegalTransition(SecurityError):
    pass
