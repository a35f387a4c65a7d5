from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, jsonify

from app.cdms.errors import Unauthorized
from app.cdms.models import User


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


class PermissionChecker:
    """
    Permission capability injected into the services at construction.
    """

    def has(self, user: User | None, permission_key: str) -> bool:
        return user_has_permission(user, permission_key)

    def require(self, user: User | None, permission_key: str) -> None:
        if not self.has(user, permission_key):
            raise Unauthorized(
                f"Missing permission: {permission_key}",
                permission=permission_key,
            )


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → 401 (JSON API, no login page to redirect to).
            if not user or not user.is_active:
                return jsonify({"error": "unauthenticated", "message": "Login required."}), 401
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
