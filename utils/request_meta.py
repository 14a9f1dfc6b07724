from typing import Optional

from flask import request


def client_ip() -> str:
    # X-Forwarded-For is only honoured through ProxyFix (TRUSTED_PROXY_COUNT),
    # which rewrites remote_addr
    return request.remote_addr or "unknown"


def user_agent() -> Optional[str]:
    return request.headers.get("User-Agent") or None


def clip(value: Optional[str], length: int) -> Optional[str]:
    if not value:
        return None
    return value[:length]


def normalize_email(value: str) -> str:
    return (value or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return isinstance(email, str) and "@" in email and len(email) <= 255
