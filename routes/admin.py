from flask import Blueprint, jsonify, request, g

from models import db
from models.audit_log import AuditLog
from models.user import User
from security.rbac import require_roles
from security.recovery import current_recovery
from utils.request_meta import client_ip, user_agent

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _account_or_404(account_id: int):
    user = db.session.get(User, account_id)
    if user is None:
        return None, (jsonify(error="Account not found"), 404)
    return user, None


@admin_bp.get("/accounts/<int:account_id>/lockout")
@require_roles("ADMIN")
def lockout_status(account_id: int):
    _, missing = _account_or_404(account_id)
    if missing:
        return missing
    return jsonify(current_recovery().lockout.snapshot(account_id).to_dict()), 200


@admin_bp.post("/accounts/<int:account_id>/unlock")
@require_roles("ADMIN")
def unlock_account(account_id: int):
    _, missing = _account_or_404(account_id)
    if missing:
        return missing

    previous = current_recovery().unlock_account(
        account_id,
        unlocked_by=g.user.id,
        ip=client_ip(),
        user_agent=user_agent(),
    )
    return jsonify(message="Account unlocked", previous=previous.to_dict()), 200


@admin_bp.get("/audit-logs")
@require_roles("ADMIN")
def list_audit_logs():
    limit = request.args.get("limit", type=int) or 200
    limit = max(1, min(limit, 500))

    action = request.args.get("action")
    user_id = request.args.get("user_id", type=int)

    q = AuditLog.query
    if action:
        q = q.filter(AuditLog.action == action)
    if user_id is not None:
        q = q.filter(AuditLog.user_id == user_id)

    rows = q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
    return jsonify([r.to_dict() for r in rows]), 200
