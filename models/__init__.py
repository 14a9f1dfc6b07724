from .db import db
from .user import User, Role, user_roles
from .session import Session
from .recovery_token import PasswordResetToken
from .lockout_state import LockoutState
from .rate_limit_bucket import RateLimitBucket
from .audit_log import AuditLog
