# Overview: Request and role decorators for API routes.

from functools import wraps
from flask import request, jsonify, g, current_app


ROLE_ADMIN = "admin"
ROLE_STAFF = "staff"
ROLE_CUSTOMER = "customer"
VALID_ROLES = {ROLE_ADMIN, ROLE_STAFF, ROLE_CUSTOMER}


def _is_authenticated() -> bool:
    return hasattr(g, 'actor_id') and hasattr(g, 'role')


def require_auth(f):
    """
    Require a bearer token and establish the actor.

    Tokens are resolved against AUTH_TOKENS ({token: {"actor_id", "role"}}). Sets on Flask g:
    - g.actor_id: who is acting; recorded as processed_by on ledger rows
    - g.role: admin | staff | customer

    Returns 401 if the header is missing or the token is unknown.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        identity = current_app.config.get("AUTH_TOKENS", {}).get(token)

        if not identity or identity.get("role") not in VALID_ROLES:
            current_app.logger.warning("Rejected token for %s %s", request.method, request.path)
            return jsonify({"error": "Invalid or expired token"}), 401

        g.actor_id = str(identity.get("actor_id") or identity.get("role"))
        g.role = identity["role"]

        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles):
    """Require the authenticated actor to hold one of the given roles."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # Ensure @require_auth was called first
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            if g.role not in roles:
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": list(roles),
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator

