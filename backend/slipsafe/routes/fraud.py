# Overview: Flask API routes for fraud event review; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import claim_service, fraud_service
from ..services.fraud_service import FraudError, FraudEventNotFoundError
from ..decorators import require_merchant_reviewer
from slipsafe.time_utils import parse_iso_datetime


fraud_bp = Blueprint("fraud", __name__, url_prefix="/api/fraud")


def _parse_bool(value):
    if value is None:
        return None
    return value.lower() in ("1", "true", "yes")


@fraud_bp.get("/events")
@require_merchant_reviewer
def list_events_route():
    """
    List fraud events for the caller's merchant.

    Query params:
        event_type, severity, claim_id, resolved (true/false),
        since (ISO-8601), limit (default 100, max 500)
    """
    try:
        try:
            since = parse_iso_datetime(request.args.get("since"))
            claim_id = request.args.get("claim_id", type=int)
            limit = min(request.args.get("limit", 100, type=int), 500)
        except ValueError:
            return jsonify({"error": "Invalid filter value"}), 400

        event_type = request.args.get("event_type")
        if event_type and event_type not in fraud_service.FRAUD_EVENT_TYPES:
            return jsonify({"error": f"Unknown event_type '{event_type}'"}), 400

        events = fraud_service.list_fraud_events(
            merchant_id=g.merchant_id,
            event_type=event_type,
            resolved=_parse_bool(request.args.get("resolved")),
            claim_id=claim_id,
            severity=request.args.get("severity"),
            since=since,
            limit=limit,
        )
        return jsonify({"events": [event.to_dict() for event in events]}), 200

    except Exception:
        current_app.logger.exception("Failed to list fraud events")
        return jsonify({"error": "Internal server error"}), 500


@fraud_bp.post("/events")
@require_merchant_reviewer
def flag_event_route():
    """
    Flag a suspicious pattern by hand.

    Request body:
    {
        "description": "Same customer, third warranty claim this week",
        "claim_code": "7K3M9Q2XWZ4B8N5R",  (optional)
        "severity": "medium",  (optional, default: low)
        "metadata": "free text"  (optional, never interpreted)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        claim = None
        if data.get("claim_code"):
            claim = claim_service.get_claim_by_code(data["claim_code"])
            if claim is None:
                return jsonify({"error": f"Claim {data['claim_code']} not found"}), 404

        event = fraud_service.flag_suspicious_pattern(
            data.get("description") or "",
            claim=claim,
            merchant_id=g.merchant_id,
            severity=data.get("severity", fraud_service.SEVERITY_LOW),
            metadata=data.get("metadata"),
        )
        return jsonify({"event": event.to_dict()}), 201

    except FraudError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to flag suspicious pattern")
        return jsonify({"error": "Internal server error"}), 500


@fraud_bp.post("/events/<int:event_id>/resolve")
@require_merchant_reviewer
def resolve_event_route(event_id: int):
    """Resolve an event. Resolving twice returns the event unchanged."""
    try:
        visible = fraud_service.list_fraud_events(merchant_id=g.merchant_id, limit=1, event_id=event_id)
        if not visible:
            raise FraudEventNotFoundError(f"Fraud event {event_id} not found")

        event = fraud_service.resolve_fraud_event(event_id, resolved_by=g.merchant_user.id)
        return jsonify({"event": event.to_dict()}), 200

    except FraudEventNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to resolve fraud event")
        return jsonify({"error": "Internal server error"}), 500
