# Overview: Actor and role decorators for API routes.

import logging
from functools import wraps

from flask import request, jsonify, g

logger = logging.getLogger(__name__)

# Ordered role hierarchy; operational roles share one rank
ROLE_RANKS = {
    "viewer": 10,
    "sales": 20,
    "purchasing": 20,
    "warehouse": 20,
    "finance": 20,
    "manager": 30,
    "admin": 40,
    "super_admin": 50,
}

# Operational roles are departments: one never stands in for another.
# Manager and above may act for every department.
DEPARTMENT_ROLES = frozenset({"sales", "purchasing", "warehouse", "finance"})
DEPARTMENT_OVERRIDE_ROLE = "manager"


def role_rank(role: str | None) -> int:
    return ROLE_RANKS.get((role or "").strip().lower(), 0)


def has_role(role: str | None, min_role: str) -> bool:
    if min_role in DEPARTMENT_ROLES:
        actor_role = (role or "").strip().lower()
        return actor_role == min_role or role_rank(actor_role) >= ROLE_RANKS[DEPARTMENT_OVERRIDE_ROLE]
    return role_rank(role) >= ROLE_RANKS[min_role]


def permission_denied(min_role: str):
    """403 response for the current actor; logs the denial."""
    logger.info(
        "Role denied: actor=%s role=%s required=%s path=%s",
        getattr(g, "actor_id", None), getattr(g, "actor_role", None), min_role, request.path,
    )
    return jsonify({
        "error": "permission_denied",
        "message": f"Requires role {min_role} or higher",
        "required_role": min_role,
    }), 403


def _is_authenticated() -> bool:
    return hasattr(g, "actor_id") and hasattr(g, "actor_role")


def require_actor(f):
    """
    Require an authenticated actor forwarded by the upstream gateway.

    Sets:
    - g.actor_id: int, recorded as created_by / approved_by / settled_by
    - g.actor_role: lower-cased role name

    Returns 401 when X-Actor-Id is missing or not a positive integer, or
    X-Actor-Role is not a known role.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw_id = (request.headers.get("X-Actor-Id") or "").strip()
        raw_role = (request.headers.get("X-Actor-Role") or "").strip().lower()

        if not raw_id.isdigit() or int(raw_id) <= 0:
            return jsonify({"error": "authentication_required", "message": "Authentication required"}), 401
        if raw_role not in ROLE_RANKS:
            return jsonify({"error": "authentication_required", "message": "Unknown actor role"}), 401

        g.actor_id = int(raw_id)
        g.actor_role = raw_role
        return f(*args, **kwargs)

    return decorated_function


def require_role(min_role: str):
    """
    Require the actor's role to rank at least `min_role`.

    Department roles (sales, purchasing, warehouse, finance) match only
    themselves or manager and above. Must be applied after @require_actor.
    """
    if min_role not in ROLE_RANKS:
        raise ValueError(f"unknown role {min_role!r}")

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "authentication_required", "message": "Authentication required"}), 401

            if not has_role(g.actor_role, min_role):
                return permission_denied(min_role)

            return f(*args, **kwargs)

        return decorated_function
    return decorator
