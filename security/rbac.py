from functools import wraps
from flask import g, jsonify

def role_names(user) -> set:
    if user is None:
        return set()
    return {r.name for r in user.roles}

def require_roles(*role_names_allowed: str):
    """
    Usage: @require_roles("ADMIN")
    Anonymous callers get 401, authenticated callers without a matching role 403.
    """
    allowed = set(role_names_allowed)

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                return jsonify(error="Authentication required"), 401

            if not role_names(user) & allowed:
                return jsonify(error="Forbidden"), 403

            return fn(*args, **kwargs)
        return wrapper
    return decorator
