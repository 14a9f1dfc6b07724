import logging

import click
from flask import Flask, jsonify
from flask_migrate import Migrate
from werkzeug.middleware.proxy_fix import ProxyFix

from config import Config, engine_options
from models import db
from models.user import User, Role
from routes import health_bp, auth_bp, password_bp, admin_bp
from security import recovery
from security.errors import StorageUnavailable
from utils.auth_context import load_current_user
from utils.seed import seed_roles

logger = logging.getLogger(__name__)


def create_app(config_overrides=None, clock=None, notifier=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)
        # engine options follow the effective database URI unless given explicitly
        if "SQLALCHEMY_ENGINE_OPTIONS" not in config_overrides:
            app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options(
                app.config["SQLALCHEMY_DATABASE_URI"], int(app.config["DB_TIMEOUT_SECONDS"])
            )

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # honour X-Forwarded-For only for the proxies we actually sit behind
    trusted_proxies = int(app.config.get("TRUSTED_PROXY_COUNT", 0))
    if trusted_proxies > 0:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=trusted_proxies, x_proto=trusted_proxies)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(password_bp)
    app.register_blueprint(admin_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Recovery services (tokens, lockout, rate limits, audit, email)
    recovery.init_app(app, clock=clock, notifier=notifier)

    with app.app_context():
        if app.config.get("AUTO_CREATE_TABLES"):
            db.create_all()
        # Seed default roles at startup (safe & idempotent)
        seed_roles()

    @app.before_request
    def _load_user():
        load_current_user()

    @app.errorhandler(StorageUnavailable)
    def _storage_unavailable(exc):
        db.session.rollback()
        return jsonify(error=exc.public_message), 503

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Cache-Control"] = "no-store"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app


def register_cli(app):
    @app.cli.command("make-admin")
    @click.argument("email")
    def make_admin(email):
        """Promote a user to ADMIN by email (bootstrap)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            click.echo("User not found")
            return

        admin_role = Role.query.filter_by(name="ADMIN").first()
        if not admin_role:
            admin_role = Role(name="ADMIN")
            db.session.add(admin_role)
            db.session.commit()

        if admin_role not in user.roles:
            user.roles.append(admin_role)
            db.session.commit()

        click.echo(f"{user.email} promoted to ADMIN")

    @app.cli.command("purge-recovery-tokens")
    @click.option("--retention-seconds", type=int, default=None,
                  help="Keep expired tokens this long for audit lookups.")
    def purge_recovery_tokens(retention_seconds):
        """Delete recovery tokens that expired before the retention window."""
        if retention_seconds is None:
            retention_seconds = app.config.get("RECOVERY_TOKEN_RETENTION_SECONDS", 86400)
        deleted = recovery.current_recovery().purge_expired_tokens(retention_seconds)
        click.echo(f"Deleted {deleted} expired recovery token(s)")

    @app.cli.command("purge-rate-limits")
    def purge_rate_limits():
        """Delete rate limit buckets whose window has elapsed."""
        deleted = recovery.current_recovery().purge_rate_limit_buckets()
        click.echo(f"Deleted {deleted} elapsed rate limit bucket(s)")


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
