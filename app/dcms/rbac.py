from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import current_app, g, jsonify

from app.dcms.models import User


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return jsonify({"error": "Unauthorized", "message": "Login required."}), 401
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                current_app.logger.warning(
                    "Forbidden: missing_permission=%s request_id=%s", permission_key, getattr(g, "request_id", None)
                )
                return jsonify({"error": "Forbidden", "message": f"Missing permission: {permission_key}"}), 403
            return fn(*args, **kwargs)

        return wrapped

    return decorator
