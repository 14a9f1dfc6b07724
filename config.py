import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def engine_options(uri: str, timeout_seconds: int) -> dict:
    """Bounded waits for the pool, the driver connect and each statement."""
    if uri.startswith("sqlite"):
        # timeout: how long a writer waits on the database lock
        return {"connect_args": {"timeout": timeout_seconds, "check_same_thread": False}}

    options = {"pool_pre_ping": True, "pool_timeout": timeout_seconds}
    if uri.startswith("postgresql"):
        options["connect_args"] = {
            "connect_timeout": timeout_seconds,
            "options": f"-c statement_timeout={timeout_seconds * 1000}",
        }
    return options


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as recovery.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "recovery.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Upper bound on any single storage wait
    DB_TIMEOUT_SECONDS = int(os.getenv("DB_TIMEOUT_SECONDS", "5"))
    SQLALCHEMY_ENGINE_OPTIONS = engine_options(SQLALCHEMY_DATABASE_URI, DB_TIMEOUT_SECONDS)

    # create tables on startup instead of running migrations (dev/tests)
    AUTO_CREATE_TABLES = os.getenv("AUTO_CREATE_TABLES", "false").lower() == "true"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Number of reverse proxies in front of the app; 0 ignores X-Forwarded-For
    TRUSTED_PROXY_COUNT = int(os.getenv("TRUSTED_PROXY_COUNT", "0"))

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "recovery_session"

    # 8 hours session lifetime
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60

    # Idle timeout: 20 minutes
    IDLE_TIMEOUT_SECONDS = 20 * 60

    # Session/cookie security defaults
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() == "true"

    # Recovery tokens
    RECOVERY_TOKEN_TTL_SECONDS = int(os.getenv("RECOVERY_TOKEN_TTL_SECONDS", "3600"))
    RECOVERY_TOKEN_RETENTION_SECONDS = int(os.getenv("RECOVERY_TOKEN_RETENTION_SECONDS", "86400"))
    PASSWORD_RESET_URL = os.getenv("PASSWORD_RESET_URL", "http://localhost:3000/reset-password")

    # Progressive lockout: 15 min at the 5th failure, doubling, capped at 24h
    LOCKOUT_THRESHOLD = int(os.getenv("LOCKOUT_THRESHOLD", "5"))
    LOCKOUT_BASE_SECONDS = int(os.getenv("LOCKOUT_BASE_SECONDS", "900"))
    LOCKOUT_MULTIPLIER = float(os.getenv("LOCKOUT_MULTIPLIER", "2"))
    LOCKOUT_MAX_SECONDS = int(os.getenv("LOCKOUT_MAX_SECONDS", "86400"))

    # Rate limits: "database" is shared by all instances, "memory" is per process
    RATE_LIMIT_STORAGE = os.getenv("RATE_LIMIT_STORAGE", "database")
    # action -> (max requests, window seconds); merged over the built-in defaults
    RATE_LIMITS = {}

    # Audit trail
    AUDIT_WRITE_TIMEOUT_SECONDS = float(os.getenv("AUDIT_WRITE_TIMEOUT_SECONDS", "2"))

    # Password policy
    PASSWORD_MIN_LEN = int(os.getenv("PASSWORD_MIN_LEN", "8"))
    PASSWORD_MAX_LEN = int(os.getenv("PASSWORD_MAX_LEN", "128"))
    PASSWORD_REQUIRE_SYMBOL = os.getenv("PASSWORD_REQUIRE_SYMBOL", "false").lower() == "true"

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
    SMTP_TIMEOUT_SECONDS = int(os.getenv("SMTP_TIMEOUT_SECONDS", "10"))
    NOTIFY_WORKERS = int(os.getenv("NOTIFY_WORKERS", "2"))

    # Basic app settings
    DEBUG = False
