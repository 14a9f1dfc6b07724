import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage

logger = logging.getLogger(__name__)


def _mask(address: str) -> str:
    local, _, domain = (address or "").partition("@")
    return f"{local[:1]}***@{domain}" if domain else "***"


class SmtpNotifier:
    """
    Delivers recovery links and password-changed confirmations over SMTP.
    Settings are captured up front because sends run on a worker thread.
    Failed sends are logged here and reported as (False, error).
    """

    def __init__(self, host=None, port=587, username=None, password=None,
                 from_email=None, use_tls=True, timeout=10):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email or username
        self.use_tls = use_tls
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            host=config.get("SMTP_HOST"),
            port=config.get("SMTP_PORT", 587),
            username=config.get("SMTP_USERNAME"),
            password=config.get("SMTP_PASSWORD"),
            from_email=config.get("SMTP_FROM_EMAIL"),
            use_tls=config.get("SMTP_USE_TLS", True),
            timeout=config.get("SMTP_TIMEOUT_SECONDS", 10),
        )

    def send_recovery_email(self, to_address: str, reset_url: str, expires_at: datetime):
        body = (
            "We received a request to reset the password for your account.\n\n"
            "Use this link to choose a new password:\n"
            f"{reset_url}\n\n"
            f"The link expires at {expires_at:%Y-%m-%d %H:%M} UTC.\n\n"
            "If you did not ask for this, you can ignore this email."
        )
        return self.send(to_address, "Reset your password", body)

    def send_password_changed_email(self, to_address: str, changed_at: datetime):
        body = (
            f"The password for your account was changed at {changed_at:%Y-%m-%d %H:%M} UTC "
            "and every signed-in session was ended.\n\n"
            "If you did not make this change, reset your password again and contact support."
        )
        return self.send(to_address, "Your password has been reset", body)

    def send(self, to_email: str, subject: str, body: str):
        if not self.host or not self.from_email:
            logger.warning("Email not configured; dropped \"%s\" to %s", subject, _mask(to_email))
            return False, "Email not configured"

        msg = EmailMessage()
        msg["From"] = self.from_email
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content(body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
            return True, None
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("SMTP send of \"%s\" to %s failed: %s", subject, _mask(to_email), exc)
            return False, str(exc)
