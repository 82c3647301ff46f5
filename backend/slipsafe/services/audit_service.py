# Overview: Append-only verification audit log; the forensic trail for claims.

"""
Verification Audit Log

WHY: Every verification, redemption and refusal attempt is recorded, even
"nothing happened" outcomes (unknown codes, expired claims, wrong PINs).
Disputes and fraud detection both read from here, and PIN throttling is
computed from it so it survives restarts and is shared by every instance.

IMMUTABLE: This module only inserts. Nothing updates or deletes rows.
"""

from __future__ import annotations

from ..extensions import db
from ..models import ClaimVerification
from .concurrency import add_with_retry
from slipsafe.time_utils import utcnow


# =============================================================================
# RESULTS (stored) AND STATUSES (shown to the merchant)
# =============================================================================

RESULT_APPROVED = "approved"
RESULT_PARTIAL_APPROVED = "partial_approved"
RESULT_REJECTED = "rejected"
RESULT_FRAUD_SUSPECTED = "fraud_suspected"

VERIFICATION_RESULTS = (
    RESULT_APPROVED,
    RESULT_PARTIAL_APPROVED,
    RESULT_REJECTED,
    RESULT_FRAUD_SUSPECTED,
)

STATUS_MATCH = "MATCH"
STATUS_NO_MATCH = "NO_MATCH"
STATUS_EXPIRED = "EXPIRED"
STATUS_ALREADY_REDEEMED = "ALREADY_REDEEMED"
STATUS_INVALID = "INVALID"
STATUS_RATE_LIMITED = "RATE_LIMITED"

ACTION_VERIFY = "verify"
ACTION_REDEEM = "redeem"
ACTION_REFUSE = "refuse"
ACTION_PENDING = "pending"

# Actions that try to change claim state
MUTATING_ACTIONS = (ACTION_REDEEM, ACTION_REFUSE, ACTION_PENDING)


def record_attempt(
    *,
    claim_id: int | None,
    claim_code: str | None,
    action: str,
    result: str,
    status: str,
    attempted_pin: str | None = None,
    pin_correct: bool | None = None,
    merchant_id: int | None = None,
    merchant_user_id: int | None = None,
    refund_amount_cents: int | None = None,
    notes: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> ClaimVerification:
    """
    Append one audit row and commit it.

    The commit happens before the caller sees the outcome so throttling
    counts are durable even if the request dies afterwards.
    """
    if result not in VERIFICATION_RESULTS:
        raise ValueError(f"Unknown verification result: {result}")

    def _build():
        return ClaimVerification(
            claim_id=claim_id,
            claim_code_attempted=(claim_code or "")[:64] or None,
            merchant_id=merchant_id,
            merchant_user_id=merchant_user_id,
            action=action,
            result=result,
            status=status,
            attempted_pin=(attempted_pin or "")[:16] or None,
            pin_correct=pin_correct,
            refund_amount_cents=refund_amount_cents,
            notes=notes,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:512] or None,
            created_at=utcnow(),
        )

    return add_with_retry(_build)


def list_claim_attempts(claim_id: int, limit: int | None = None) -> list[ClaimVerification]:
    """Audit rows for a claim, newest first."""
    query = db.session.query(ClaimVerification).filter_by(claim_id=claim_id).order_by(
        ClaimVerification.created_at.desc(), ClaimVerification.id.desc()
    )
    if limit:
        query = query.limit(limit)
    return query.all()
