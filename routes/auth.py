from flask import Blueprint, request, jsonify, current_app

from models.user import User
from security.errors import AccountLocked, retry_after_seconds
from security.password import burn_verify_time, verify_password
from security.recovery import current_recovery
from security.session import create_session, revoke_session
from utils.auth_context import login_required
from utils.request_meta import client_ip, normalize_email, user_agent


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get("email") if isinstance(data.get("email"), str) else "")
    password = data.get("password") if isinstance(data.get("password"), str) else ""

    recovery = current_recovery()
    ip, ua = client_ip(), user_agent()

    user = User.query.filter_by(email=email, is_active=True).first() if email else None
    if user is None:
        # same bcrypt cost as a real check
        burn_verify_time(password)
        return jsonify(error="Invalid credentials"), 401

    try:
        recovery.ensure_login_allowed(user.id)
    except AccountLocked as exc:
        return jsonify(error=exc.public_message, retry_after_seconds=exc.retry_after_seconds), 429

    if not verify_password(password, user.password_hash):
        snap = recovery.record_login(user.id, success=False, ip=ip, user_agent=ua)
        if snap.locked_now:
            return jsonify(
                error="Too many failed attempts. Account locked.",
                retry_after_seconds=retry_after_seconds(snap.lockout_until - recovery.lockout.clock()),
            ), 429
        return jsonify(error="Invalid credentials"), 401

    user_id = user.id
    recovery.record_login(user_id, success=True, ip=ip, user_agent=ua)

    raw_token = create_session(user_id)
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "recovery_session")

    resp = jsonify(message="Login OK")
    resp.set_cookie(
        cookie_name,
        raw_token,
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        max_age=current_app.config.get("SESSION_LIFETIME_SECONDS", 8 * 60 * 60),
        path="/",
    )
    return resp, 200


@auth_bp.post("/logout")
@login_required
def logout():
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "recovery_session")
    revoke_session(request.cookies.get(cookie_name))

    resp = jsonify(message="Logged out")
    resp.delete_cookie(cookie_name, path="/")
    return resp, 200
