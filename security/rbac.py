from functools import wraps
from flask import g, jsonify


def _deny(status: int, message: str, code: str, **details):
    # same body shape as services.errors.EngineError.to_dict()
    return jsonify(error=message, code=code, details=details), status


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return _deny(401, "Authentication required", "AuthenticationRequired")
        return fn(*args, **kwargs)
    return wrapper


def require_roles(*role_names: str):
    """
    Any one of ``role_names`` grants access; there is no implicit super role.

    Usage: @require_roles("USER", "ADMIN")
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                return _deny(401, "Authentication required", "AuthenticationRequired")
            if user.role_names.isdisjoint(role_names):
                return _deny(403, "Forbidden", "Forbidden", requiredRoles=sorted(role_names))
            return fn(*args, **kwargs)
        return wrapper
    return decorator
