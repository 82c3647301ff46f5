"""
Fraud Detection Service

WHY: PINs are only six digits. They are safe because repeated failures are
throttled and escalated here, not because they are hard to guess. This
module also turns other suspicious audit-trail patterns into reviewable
FraudEvents.

DESIGN:
- Invoked synchronously by the verifier after each audit write; no
  background process
- Throttling is computed from claim_verifications (durable, shared by
  every server instance), never from an in-memory counter
- One FraudEvent per incident; open duplicates for the same claim and
  merchant are not re-raised
- Resolution is the only mutation on an event, is idempotent, and never
  touches claim state

EVENT TYPES:
- invalid_pin_attempts: first attempt refused by the PIN throttle
- expired_claim_use: redemption/refusal attempted after expires_at
- duplicate_claim_attempt: credential payload disagrees with the stored
  claim, or a redemption replayed against a terminal claim
- cross_merchant_claim: acting merchant differs from the purchase's merchant
- suspicious_pattern: free-text escape hatch for other heuristics
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import and_, or_

from ..extensions import db
from ..models import Claim, ClaimVerification, FraudEvent, Purchase
from . import audit_service
from .concurrency import add_with_retry, conditional_update
from slipsafe.time_utils import utcnow, window_start


class FraudError(Exception):
    """Raised for fraud event operation errors."""
    pass


class FraudEventNotFoundError(FraudError):
    pass


# =============================================================================
# EVENT CONSTANTS
# =============================================================================

EVENT_DUPLICATE_CLAIM_ATTEMPT = "duplicate_claim_attempt"
EVENT_EXPIRED_CLAIM_USE = "expired_claim_use"
EVENT_INVALID_PIN_ATTEMPTS = "invalid_pin_attempts"
EVENT_CROSS_MERCHANT_CLAIM = "cross_merchant_claim"
EVENT_SUSPICIOUS_PATTERN = "suspicious_pattern"

FRAUD_EVENT_TYPES = (
    EVENT_DUPLICATE_CLAIM_ATTEMPT,
    EVENT_EXPIRED_CLAIM_USE,
    EVENT_INVALID_PIN_ATTEMPTS,
    EVENT_CROSS_MERCHANT_CLAIM,
    EVENT_SUSPICIOUS_PATTERN,
)

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITIES = (SEVERITY_LOW, SEVERITY_MEDIUM, SEVERITY_HIGH)

DEFAULT_PIN_FAILURE_THRESHOLD = 5
DEFAULT_PIN_FAILURE_WINDOW_MINUTES = 15


def _threshold() -> int:
    return current_app.config.get("PIN_FAILURE_THRESHOLD", DEFAULT_PIN_FAILURE_THRESHOLD)


def _window_minutes() -> int:
    return current_app.config.get("PIN_FAILURE_WINDOW_MINUTES", DEFAULT_PIN_FAILURE_WINDOW_MINUTES)


# =============================================================================
# PIN THROTTLING
# =============================================================================

def count_failed_pin_attempts(claim_id: int, window_minutes: int | None = None, now: datetime | None = None) -> int:
    """
    Count audit rows for this claim in the trailing window where the PIN
    was compared and did not match.
    """
    if window_minutes is None:
        window_minutes = _window_minutes()
    cutoff = window_start(window_minutes, now)

    return db.session.query(ClaimVerification).filter(
        ClaimVerification.claim_id == claim_id,
        ClaimVerification.pin_correct.is_(False),
        ClaimVerification.created_at >= cutoff,
    ).count()


def is_rate_limited(claim_id: int, now: datetime | None = None) -> bool:
    """True once the failure count in the window reaches the threshold."""
    return count_failed_pin_attempts(claim_id, now=now) >= _threshold()


# =============================================================================
# EVENT RECORDING
# =============================================================================

def record_fraud_event(
    event_type: str,
    description: str,
    *,
    severity: str = SEVERITY_LOW,
    claim: Claim | None = None,
    purchase_id: int | None = None,
    user_id: int | None = None,
    merchant_id: int | None = None,
    metadata: str | None = None,
) -> FraudEvent:
    """
    Persist a FraudEvent.

    Claim, purchase and user references are taken from `claim` when given.

    Raises:
        FraudError: If event_type or severity is unknown, or description is empty
    """
    if event_type not in FRAUD_EVENT_TYPES:
        raise FraudError(f"Unknown fraud event type: {event_type}")
    if severity not in SEVERITIES:
        raise FraudError(f"Unknown severity: {severity}")
    if not description or not description.strip():
        raise FraudError("description is required")

    if claim is not None:
        purchase_id = purchase_id or claim.purchase_id
        user_id = user_id or claim.user_id
    claim_id = claim.id if claim is not None else None

    def _build():
        return FraudEvent(
            claim_id=claim_id,
            purchase_id=purchase_id,
            user_id=user_id,
            merchant_id=merchant_id,
            event_type=event_type,
            severity=severity,
            description=description.strip(),
            metadata_text=metadata,
            resolved=False,
            created_at=utcnow(),
        )

    event = add_with_retry(_build)
    current_app.logger.warning(
        "Fraud event %s raised: %s (claim=%s merchant=%s severity=%s)",
        event.id, event_type, claim_id, merchant_id, severity,
    )
    return event


def flag_suspicious_pattern(
    description: str,
    *,
    claim: Claim | None = None,
    merchant_id: int | None = None,
    severity: str = SEVERITY_LOW,
    metadata: str | None = None,
) -> FraudEvent:
    """Escape hatch for heuristics that don't have a dedicated event type."""
    return record_fraud_event(
        EVENT_SUSPICIOUS_PATTERN,
        description,
        severity=severity,
        claim=claim,
        merchant_id=merchant_id,
        metadata=metadata,
    )


def _open_event_exists(
    claim_id: int,
    event_type: str,
    merchant_id: int | None = None,
    since: datetime | None = None,
) -> bool:
    query = db.session.query(FraudEvent.id).filter(
        FraudEvent.claim_id == claim_id,
        FraudEvent.event_type == event_type,
    )
    if since is not None:
        # Windowed incident: resolved or not, one per window
        query = query.filter(FraudEvent.created_at >= since)
    else:
        query = query.filter(
            FraudEvent.resolved.is_(False),
            FraudEvent.merchant_id.is_(None) if merchant_id is None else FraudEvent.merchant_id == merchant_id,
        )
    return query.first() is not None


# =============================================================================
# DETECTION
# =============================================================================

def inspect_attempt(claim: Claim | None, attempt: ClaimVerification) -> list[FraudEvent]:
    """
    Examine a freshly written audit row and raise any fraud events it implies.

    Everything is derived from the audit row and the claim; the verifier
    does not tell this module what to flag.

    Returns the events created by this call (possibly empty).
    """
    if claim is None:
        return []

    events = []
    merchant_id = attempt.merchant_id
    now = attempt.created_at or utcnow()

    if attempt.status == audit_service.STATUS_RATE_LIMITED:
        if not _open_event_exists(claim.id, EVENT_INVALID_PIN_ATTEMPTS, since=window_start(_window_minutes(), now)):
            failures = count_failed_pin_attempts(claim.id, now=now)
            events.append(record_fraud_event(
                EVENT_INVALID_PIN_ATTEMPTS,
                f"{failures} failed PIN attempts within {_window_minutes()} minutes on claim "
                f"{claim.claim_code}; further attempts are refused",
                severity=SEVERITY_HIGH,
                claim=claim,
                merchant_id=merchant_id,
            ))

    if (
        attempt.status == audit_service.STATUS_EXPIRED
        and attempt.action in audit_service.MUTATING_ACTIONS
        and not _open_event_exists(claim.id, EVENT_EXPIRED_CLAIM_USE, merchant_id)
    ):
        events.append(record_fraud_event(
            EVENT_EXPIRED_CLAIM_USE,
            f"Attempt to {attempt.action} claim {claim.claim_code} after it expired",
            severity=SEVERITY_MEDIUM,
            claim=claim,
            merchant_id=merchant_id,
        ))

    credential_mismatch = attempt.status == audit_service.STATUS_NO_MATCH and attempt.pin_correct is True
    forged_credential = attempt.status == audit_service.STATUS_INVALID
    terminal_replay = (
        attempt.status == audit_service.STATUS_ALREADY_REDEEMED
        and attempt.action in audit_service.MUTATING_ACTIONS
    )
    if (credential_mismatch or forged_credential or terminal_replay) and not _open_event_exists(
        claim.id, EVENT_DUPLICATE_CLAIM_ATTEMPT, merchant_id
    ):
        if forged_credential:
            description = f"Credential with a bad signature presented alongside claim code {claim.claim_code}"
        elif credential_mismatch:
            description = (
                f"Credential presented for claim {claim.claim_code} does not match the stored claim "
                "(cloned, edited or stale credential)"
            )
        else:
            description = f"Attempt to {attempt.action} claim {claim.claim_code} which is already {claim.state}"
        events.append(record_fraud_event(
            EVENT_DUPLICATE_CLAIM_ATTEMPT,
            description,
            severity=SEVERITY_HIGH,
            claim=claim,
            merchant_id=merchant_id,
            metadata=attempt.notes,
        ))

    origin_merchant_id = claim.purchase.merchant_id if claim.purchase is not None else None
    if (
        merchant_id is not None
        and origin_merchant_id is not None
        and merchant_id != origin_merchant_id
        and not _open_event_exists(claim.id, EVENT_CROSS_MERCHANT_CLAIM, merchant_id)
    ):
        events.append(record_fraud_event(
            EVENT_CROSS_MERCHANT_CLAIM,
            f"Merchant {merchant_id} attempted to {attempt.action} claim {claim.claim_code} "
            f"issued for a purchase at merchant {origin_merchant_id}",
            severity=SEVERITY_MEDIUM,
            claim=claim,
            merchant_id=merchant_id,
        ))

    return events


# =============================================================================
# REVIEW
# =============================================================================

def list_fraud_events(
    *,
    merchant_id: int | None = None,
    event_type: str | None = None,
    resolved: bool | None = None,
    claim_id: int | None = None,
    severity: str | None = None,
    since: datetime | None = None,
    event_id: int | None = None,
    limit: int = 100,
) -> list[FraudEvent]:
    """
    List fraud events, newest first.

    merchant_id scopes to events raised by that merchant's staff or
    concerning claims on purchases attributed to that merchant.
    """
    query = db.session.query(FraudEvent)

    if merchant_id is not None:
        query = query.outerjoin(Claim, FraudEvent.claim_id == Claim.id).outerjoin(
            Purchase, Claim.purchase_id == Purchase.id
        ).filter(or_(
            FraudEvent.merchant_id == merchant_id,
            and_(Purchase.merchant_id.isnot(None), Purchase.merchant_id == merchant_id),
        ))
    if event_type is not None:
        query = query.filter(FraudEvent.event_type == event_type)
    if resolved is not None:
        query = query.filter(FraudEvent.resolved.is_(resolved))
    if claim_id is not None:
        query = query.filter(FraudEvent.claim_id == claim_id)
    if severity is not None:
        query = query.filter(FraudEvent.severity == severity)
    if since is not None:
        query = query.filter(FraudEvent.created_at >= since)
    if event_id is not None:
        query = query.filter(FraudEvent.id == event_id)

    return query.order_by(FraudEvent.created_at.desc(), FraudEvent.id.desc()).limit(limit).all()


def get_fraud_event(event_id: int) -> FraudEvent:
    event = db.session.get(FraudEvent, event_id)
    if event is None:
        raise FraudEventNotFoundError(f"Fraud event {event_id} not found")
    return event


def resolve_fraud_event(event_id: int, resolved_by: int | None) -> FraudEvent:
    """
    Mark an event resolved.

    Idempotent: resolving an already-resolved event returns it unchanged.
    Never changes the state of the related claim.
    """
    event = get_fraud_event(event_id)
    if event.resolved:
        return event

    changed = conditional_update(
        db.session.query(FraudEvent).filter(
            FraudEvent.id == event_id,
            FraudEvent.resolved.is_(False),
        ),
        {"resolved": True, "resolved_at": utcnow(), "resolved_by": resolved_by},
    )
    if changed:
        current_app.logger.info("Fraud event %s resolved by %s", event_id, resolved_by)

    db.session.refresh(event)
    return event


def get_claim_risk_summary(claim_id: int) -> dict:
    """Throttle and open-event snapshot shown next to a claim under review."""
    failures = count_failed_pin_attempts(claim_id)
    open_events = db.session.query(FraudEvent).filter(
        FraudEvent.claim_id == claim_id,
        FraudEvent.resolved.is_(False),
    ).count()
    return {
        "failed_pin_attempts": failures,
        "failure_threshold": _threshold(),
        "window_minutes": _window_minutes(),
        "rate_limited": failures >= _threshold(),
        "open_fraud_events": open_events,
    }
