# Overview: Flask API routes for consumer claim issuance; parses input and returns JSON responses.

"""
Consumer Claim API Routes

WHY: After a purchase is confirmed, the owner asks for a claim to take to
the store. The response carries the only copy of the PIN the consumer will
see outside their own claim list.

SECURITY:
- Consumer session required
- Claims are only visible to their owner
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import claim_service
from ..services.claim_service import (
    ClaimError,
    ClaimNotFoundError,
    InvalidClaimTypeError,
    NotOwnerError,
    PurchaseNotFoundError,
)
from ..services.signing_service import current_signer
from ..decorators import require_user
from slipsafe.time_utils import to_utc_z


claims_bp = Blueprint("claims", __name__, url_prefix="/api/claims")


@claims_bp.post("")
@require_user
def issue_claim_route():
    """
    Issue a claim for one of the caller's purchases.

    Request body:
    {
        "purchase_id": 42,
        "claim_type": "return"  (return | warranty | exchange, default: return)
    }

    Returns:
        201: New claim {claim_code, pin, qr_payload, expires_at, claim}
        200: Existing open claim of the same type returned unchanged
        400: Invalid claim type
        403: Purchase belongs to another user
        404: Purchase not found
    """
    try:
        data = request.get_json(silent=True) or {}
        purchase_id = data.get("purchase_id")
        claim_type = data.get("claim_type", "return")

        if not purchase_id:
            return jsonify({"error": "purchase_id required"}), 400

        claim, created = claim_service.issue_claim(
            purchase_id=int(purchase_id),
            user_id=g.current_user.id,
            claim_type=claim_type,
            signer=current_signer(),
            verifier_url=current_app.config["CLAIM_VERIFIER_URL"],
            validity_days=current_app.config["CLAIM_VALIDITY_DAYS"],
        )

        return jsonify({
            "created": created,
            "claim_code": claim.claim_code,
            "pin": claim.pin,
            "qr_payload": claim.qr_code_data,
            "expires_at": to_utc_z(claim.expires_at),
            "claim": claim_service.claim_summary(claim),
        }), 201 if created else 200

    except (TypeError, ValueError):
        return jsonify({"error": "purchase_id must be an integer"}), 400
    except InvalidClaimTypeError as e:
        return jsonify({"error": str(e)}), 400
    except PurchaseNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except NotOwnerError:
        return jsonify({"error": "Purchase does not belong to the current user"}), 403
    except ClaimError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to issue claim")
        return jsonify({"error": "Internal server error"}), 500


@claims_bp.get("")
@require_user
def list_claims_route():
    """
    List the caller's claims.

    Query params:
        state: effective state filter (issued, pending, redeemed, partial, refused, expired)
    """
    try:
        state = request.args.get("state")
        claims = claim_service.list_user_claims(g.current_user.id, state=state)
        return jsonify({
            "claims": [claim_service.claim_summary(claim, include_secret=True) for claim in claims]
        }), 200

    except Exception:
        current_app.logger.exception("Failed to list claims")
        return jsonify({"error": "Internal server error"}), 500


@claims_bp.get("/<string:claim_code>")
@require_user
def get_claim_route(claim_code: str):
    try:
        claim = claim_service.get_user_claim(g.current_user.id, claim_code)
        return jsonify({"claim": claim_service.claim_summary(claim, include_secret=True)}), 200

    except ClaimNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to load claim")
        return jsonify({"error": "Internal server error"}), 500
