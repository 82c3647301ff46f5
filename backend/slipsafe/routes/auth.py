# Overview: Flask API routes for consumer and merchant login; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import auth_service, session_service
from ..services.auth_service import MerchantAuthError
from ..decorators import bearer_token, load_session_context


auth_bp = Blueprint("auth", __name__, url_prefix="/api")


def _client():
    return request.remote_addr, request.headers.get("User-Agent")


@auth_bp.post("/auth/login")
def login_route():
    """
    Consumer login.

    Request body:
    {
        "email": "alice@example.com",
        "password": "Password123!"
    }

    Returns:
        200: {"token": ..., "user": {...}}
        400: Missing fields
        401: Invalid credentials
    """
    try:
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        password = data.get("password")
        if not email or not password:
            return jsonify({"error": "email and password required"}), 400

        user = auth_service.authenticate_user(email, password)
        if not user:
            return jsonify({"error": "Invalid credentials"}), 401

        ip_address, user_agent = _client()
        _, token = session_service.create_session(
            user_id=user.id, ip_address=ip_address, user_agent=user_agent
        )
        return jsonify({"token": token, "user": user.to_dict()}), 200

    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/merchant/login")
def merchant_login_route():
    """
    Merchant staff login.

    Request body:
    {
        "merchant_id": 1,
        "email": "till@store.com",
        "password": "Password123!"
    }

    Returns:
        200: {"token": ..., "merchant_user": {...}, "merchant": {...}}
        401: Invalid credentials
        403: Merchant or staff member inactive
    """
    try:
        data = request.get_json(silent=True) or {}
        merchant_id = data.get("merchant_id")
        email = data.get("email")
        password = data.get("password")
        if not all([merchant_id, email, password]):
            return jsonify({"error": "merchant_id, email and password required"}), 400

        try:
            staff = auth_service.authenticate_merchant_user(int(merchant_id), email, password)
        except MerchantAuthError as e:
            return jsonify({"error": str(e)}), 403
        except (TypeError, ValueError):
            return jsonify({"error": "merchant_id must be an integer"}), 400

        if not staff:
            return jsonify({"error": "Invalid credentials"}), 401

        ip_address, user_agent = _client()
        _, token = session_service.create_session(
            merchant_user_id=staff.id, ip_address=ip_address, user_agent=user_agent
        )
        return jsonify({
            "token": token,
            "merchant_user": staff.to_dict(),
            "merchant": staff.merchant.to_dict(),
        }), 200

    except Exception:
        current_app.logger.exception("Failed to login merchant user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/auth/logout")
def logout_route():
    try:
        load_session_context()
        if g.session_context is None:
            return jsonify({"error": "Authentication required"}), 401

        session_service.revoke_session(bearer_token())
        return jsonify({"message": "Logged out"}), 200

    except Exception:
        current_app.logger.exception("Failed to logout user")
        return jsonify({"error": "Internal server error"}), 500
