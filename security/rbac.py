from functools import wraps

from flask import g

from utils.errors import AuthenticationFailed, Forbidden


def require_roles(*role_names: str):
    """
    Usage: @require_roles("ADMIN")
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                raise getattr(g, "auth_error", None) or AuthenticationFailed(
                    "Authentication required", code="TOKEN_MISSING"
                )

            if user.role_name not in role_names:
                raise Forbidden("You do not have permission to access this resource")

            return fn(*args, **kwargs)
        return wrapper
    return decorator
