"""
Password recovery endpoints.

Responses never reveal whether an email is registered, whether a request was
throttled, or why a token was rejected.
"""
from flask import Blueprint, request, jsonify

from security.errors import INVALID_TOKEN_MESSAGE, InvalidToken, RateLimited, WeakCredential
from security.recovery import GENERIC_REQUEST_MESSAGE, current_recovery
from utils.request_meta import client_ip, user_agent

password_bp = Blueprint("password_reset", __name__, url_prefix="/auth/password")


def _str_field(data: dict, name: str) -> str:
    value = data.get(name)
    return value if isinstance(value, str) else ""


def _too_many(exc: RateLimited):
    return jsonify(error=exc.public_message, retry_after_seconds=exc.retry_after_seconds), 429


@password_bp.post("/request")
def request_reset():
    data = request.get_json(silent=True) or {}
    current_recovery().request_reset(_str_field(data, "email"), ip=client_ip(), user_agent=user_agent())
    return jsonify(message=GENERIC_REQUEST_MESSAGE), 202


@password_bp.get("/verify")
def verify_reset_token():
    raw_token = request.args.get("token") or ""
    try:
        current_recovery().verify_token(raw_token, ip=client_ip())
    except RateLimited as exc:
        return _too_many(exc)
    except InvalidToken:
        return jsonify(error=INVALID_TOKEN_MESSAGE), 400
    return jsonify(valid=True), 200


@password_bp.post("/reset")
def complete_reset():
    data = request.get_json(silent=True) or {}
    try:
        current_recovery().complete_reset(
            _str_field(data, "token"),
            _str_field(data, "new_password"),
            ip=client_ip(),
            user_agent=user_agent(),
        )
    except RateLimited as exc:
        return _too_many(exc)
    except WeakCredential as exc:
        return jsonify(error=exc.public_message, details=exc.details), 400
    except InvalidToken:
        return jsonify(error=INVALID_TOKEN_MESSAGE), 400
    return jsonify(message="Password updated"), 200


@password_bp.get("/requirements")
def password_requirements():
    return jsonify(current_recovery().password_policy.describe()), 200
