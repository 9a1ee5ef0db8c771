from functools import wraps
from flask import g, jsonify

# passes every role check
SUPERUSER_ROLE = "ADMIN"


def has_role(role_name: str) -> bool:
    user = getattr(g, "user", None)
    return user is not None and role_name in user.role_names


def require_roles(*role_names: str):
    """
    Usage: @require_roles("VENDOR")

    Checks the stored roles, not the acting role, so a vendor who also
    rents still passes a VENDOR check.
    """
    wanted = set(role_names) | {SUPERUSER_ROLE}

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                return jsonify(error="Authentication required"), 401
            if not user.role_names & wanted:
                return jsonify(error="Forbidden"), 403
            return fn(*args, **kwargs)
        return wrapper
    return decorator
