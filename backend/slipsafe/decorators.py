# Overview: Request decorators for API routes (consumer and merchant sessions).

from functools import wraps
from flask import request, jsonify, g

from .services import session_service


def bearer_token() -> str | None:
    """Token from "Authorization: Bearer ..." or the X-Merchant-Session header."""
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip() or None
    return request.headers.get("X-Merchant-Session") or None


def load_session_context() -> None:
    """
    Populate g from the request's session token, if any.

    Sets g.session_context, g.current_user (consumer), g.merchant_user and
    g.merchant_id (merchant staff). Missing or invalid tokens leave them None.
    """
    g.session_context = None
    g.current_user = None
    g.merchant_user = None
    g.merchant_id = None

    token = bearer_token()
    if not token:
        return

    context = session_service.validate_session(token)
    if not context:
        return

    g.session_context = context
    g.current_user = context.user
    g.merchant_user = context.merchant_user
    g.merchant_id = context.merchant_id


def require_user(f):
    """Require an authenticated consumer session."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        load_session_context()
        if g.current_user is None:
            return jsonify({"error": "Authentication required"}), 401
        return f(*args, **kwargs)

    return decorated_function


def optional_merchant(f):
    """
    Attach the merchant context when a valid merchant session is present.

    Verification is callable without redemption authority; anonymous
    attempts are still attributed by IP and user agent in the audit log.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        load_session_context()
        return f(*args, **kwargs)

    return decorated_function


def require_merchant(f):
    """
    Require an authenticated merchant staff session.

    SECURITY: Returns 401 if:
    - No session token
    - Invalid, expired or revoked token
    - Merchant or staff member deactivated
    - Token belongs to a consumer
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        load_session_context()
        if g.merchant_user is None:
            return jsonify({"error": "Merchant authentication required"}), 401
        return f(*args, **kwargs)

    return decorated_function


def require_merchant_reviewer(f):
    """Require a merchant owner or manager (fraud review, audit views)."""
    @wraps(f)
    @require_merchant
    def decorated_function(*args, **kwargs):
        if not g.merchant_user.can_review:
            return jsonify({
                "error": "Permission denied",
                "message": "Owner or manager role required",
            }), 403
        return f(*args, **kwargs)

    return decorated_function
