# Overview: Flask API routes for merchant verification and redemption; parses input and returns JSON responses.

"""
Merchant Claim API Routes

WHY: Staff at the till verify a customer's claim (scan or type code + PIN)
and then redeem, partially redeem, or refuse it.

DESIGN:
- Verification is read-only and works without a merchant session
- Redeem / refuse / pending require a merchant staff session
- Responses always carry an explicit status (MATCH, NO_MATCH, EXPIRED,
  ALREADY_REDEEMED, INVALID, RATE_LIMITED) for a human decision

HTTP CODES:
- 200 for every verification outcome (the status is the answer)
- redeem/refuse: 200 on success, 409 ALREADY_REDEEMED, 410 EXPIRED,
  429 RATE_LIMITED, 422 NO_MATCH / INVALID, 400 InvalidAmount
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import audit_service, claim_service, fraud_service, verification_service
from ..services.audit_service import (
    STATUS_ALREADY_REDEEMED,
    STATUS_EXPIRED,
    STATUS_INVALID,
    STATUS_MATCH,
    STATUS_NO_MATCH,
    STATUS_RATE_LIMITED,
)
from ..services.auth_service import MerchantAuthError
from ..services.signing_service import current_signer
from ..services.verification_service import AttemptContext, InvalidAmountError
from ..decorators import optional_merchant, require_merchant, require_merchant_reviewer


merchant_bp = Blueprint("merchant", __name__, url_prefix="/api/merchant")


MUTATION_HTTP_STATUS = {
    STATUS_MATCH: 200,
    STATUS_ALREADY_REDEEMED: 409,
    STATUS_EXPIRED: 410,
    STATUS_RATE_LIMITED: 429,
    STATUS_NO_MATCH: 422,
    STATUS_INVALID: 422,
}


def _context() -> AttemptContext:
    merchant_user = g.get("merchant_user")
    return AttemptContext(
        merchant_id=merchant_user.merchant_id if merchant_user else None,
        merchant_user_id=merchant_user.id if merchant_user else None,
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )


def _credential_args(data: dict):
    """Raises ValueError for a missing credential or a non-string code or token."""
    claim_code = data.get("claim_code")
    token = data.get("token")
    pin = data.get("pin")
    if claim_code is not None and not isinstance(claim_code, str):
        raise ValueError("claim_code must be a string")
    if token is not None and not isinstance(token, str):
        raise ValueError("token must be a string")
    if not claim_code and not token:
        raise ValueError("claim_code or token required")
    if pin is not None:
        pin = str(pin)
    return claim_code, token, pin


def _is_partial(data: dict) -> bool:
    is_partial = data.get("is_partial", False)
    if not isinstance(is_partial, bool):
        raise ValueError("is_partial must be a JSON boolean")
    return is_partial


def _mutation_response(outcome):
    body = outcome.to_dict()
    body["new_state"] = outcome.state if outcome.is_match else None
    return jsonify(body), MUTATION_HTTP_STATUS.get(outcome.status, 422)


@merchant_bp.post("/verify")
@optional_merchant
def verify_route():
    """
    Verify a claim without changing it.

    Request body (typed or scanned):
    {
        "claim_code": "7K3M9Q2XWZ4B8N5R",  (optional when token is given)
        "token": "<signed credential from the QR payload>",  (optional)
        "pin": "123456"
    }

    Returns:
        200: {status, state, claim, purchase, comparison, message}
        400: Neither claim_code nor token supplied, or either is not a string
    """
    try:
        data = request.get_json(silent=True) or {}
        claim_code, token, pin = _credential_args(data)

        outcome = verification_service.verify_claim(
            claim_code,
            pin,
            token=token,
            signer=current_signer(),
            context=_context(),
        )
        return jsonify(outcome.to_dict()), 200

    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to verify claim")
        return jsonify({"error": "Internal server error"}), 500


@merchant_bp.post("/redeem")
@require_merchant
def redeem_route():
    """
    Redeem a claim (full or partial).

    Request body:
    {
        "claim_code": "7K3M9Q2XWZ4B8N5R",
        "pin": "123456",
        "is_partial": false,
        "refund_amount_cents": 7500,  (required when is_partial)
        "notes": "Box opened, item unused"  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        claim_code, token, pin = _credential_args(data)

        outcome = verification_service.redeem_claim(
            claim_code,
            pin,
            is_partial=_is_partial(data),
            refund_amount_cents=data.get("refund_amount_cents"),
            notes=data.get("notes"),
            token=token,
            signer=current_signer(),
            context=_context(),
        )
        return _mutation_response(outcome)

    except InvalidAmountError as e:
        return jsonify({"error": str(e), "status": "INVALID_AMOUNT"}), 400
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except MerchantAuthError as e:
        return jsonify({"error": str(e)}), 403
    except Exception:
        current_app.logger.exception("Failed to redeem claim")
        return jsonify({"error": "Internal server error"}), 500


@merchant_bp.post("/refuse")
@require_merchant
def refuse_route():
    """
    Refuse a claim (terminal). The customer presented a valid claim but
    staff decline it under store policy.

    Request body:
    {
        "claim_code": "7K3M9Q2XWZ4B8N5R",
        "pin": "123456",
        "reason": "Item visibly damaged, outside policy"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        claim_code, token, pin = _credential_args(data)

        outcome = verification_service.refuse_claim(
            claim_code,
            pin,
            reason=data.get("reason"),
            token=token,
            signer=current_signer(),
            context=_context(),
        )
        return _mutation_response(outcome)

    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except MerchantAuthError as e:
        return jsonify({"error": str(e)}), 403
    except Exception:
        current_app.logger.exception("Failed to refuse claim")
        return jsonify({"error": "Internal server error"}), 500


@merchant_bp.post("/claims/<string:claim_code>/pending")
@require_merchant
def mark_pending_route(claim_code: str):
    """Mark an issued claim as being processed. Body: {"pin": "123456"}."""
    try:
        data = request.get_json(silent=True) or {}
        pin = data.get("pin")
        outcome = verification_service.mark_pending(
            claim_code,
            str(pin) if pin is not None else None,
            context=_context(),
        )
        return _mutation_response(outcome)

    except MerchantAuthError as e:
        return jsonify({"error": str(e)}), 403
    except Exception:
        current_app.logger.exception("Failed to mark claim pending")
        return jsonify({"error": "Internal server error"}), 500


@merchant_bp.get("/claims/<string:claim_code>/verifications")
@require_merchant_reviewer
def claim_verifications_route(claim_code: str):
    """
    Audit trail and risk snapshot for a claim.

    Requires: merchant owner or manager. Visible only for claims on
    purchases attributed to the caller's merchant or claims the merchant
    has already acted on.
    """
    try:
        claim = claim_service.get_claim_by_code(claim_code)
        if claim is None:
            return jsonify({"error": f"Claim {claim_code} not found"}), 404

        attempts = audit_service.list_claim_attempts(claim.id)
        origin_merchant_id = claim.purchase.merchant_id if claim.purchase else None
        if origin_merchant_id != g.merchant_id and not any(a.merchant_id == g.merchant_id for a in attempts):
            return jsonify({"error": f"Claim {claim_code} not found"}), 404

        return jsonify({
            "claim": claim_service.claim_summary(claim),
            "verifications": [attempt.to_dict() for attempt in attempts],
            "risk": fraud_service.get_claim_risk_summary(claim.id),
        }), 200

    except Exception:
        current_app.logger.exception("Failed to load claim verifications")
        return jsonify({"error": "Internal server error"}), 500
