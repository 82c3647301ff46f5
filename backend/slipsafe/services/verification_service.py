"""
Claim Verification & Redemption Service

WHY: At the till, staff scan or type a claim code and the customer's PIN.
Verification tells them whether the claim is good; redemption records the
outcome exactly once.

DESIGN PRINCIPLES:
- Every call writes exactly one audit row, success or failure, before the
  outcome is returned
- Verification-time problems are structured outcomes with an explicit
  status, not exceptions, so nothing skips the audit log
- Verification never mutates claim state
- Redemption runs the same checks first, then flips state with a
  conditional UPDATE whose WHERE clause requires state IN ('issued',
  'pending') and an unexpired deadline; the loser of a race observes
  ALREADY_REDEEMED instead of double-redeeming
- A signed credential is never trusted without a live claim lookup

CHECK ORDER:
1. Unknown claim code -> INVALID
2. Non-terminal and past expires_at -> EXPIRED
3. PIN throttle tripped -> RATE_LIMITED (PIN not compared)
4. PIN compared; mismatch -> NO_MATCH
5. Credential (QR path) disagrees with stored claim -> NO_MATCH
6. Terminal state -> ALREADY_REDEEMED (reports the terminal state)
7. Otherwise MATCH with the current non-terminal state
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass, field

from flask import current_app

from ..extensions import db
from ..models import Claim, ClaimVerification, FraudEvent, Purchase
from . import audit_service, claim_service, fraud_service
from .audit_service import (
    ACTION_PENDING,
    ACTION_REDEEM,
    ACTION_REFUSE,
    ACTION_VERIFY,
    RESULT_APPROVED,
    RESULT_FRAUD_SUSPECTED,
    RESULT_PARTIAL_APPROVED,
    RESULT_REJECTED,
    STATUS_ALREADY_REDEEMED,
    STATUS_EXPIRED,
    STATUS_INVALID,
    STATUS_MATCH,
    STATUS_NO_MATCH,
    STATUS_RATE_LIMITED,
)
from .auth_service import require_active_merchant
from .claim_service import (
    CLAIM_STATE_ISSUED,
    CLAIM_STATE_PARTIAL,
    CLAIM_STATE_PENDING,
    CLAIM_STATE_REDEEMED,
    CLAIM_STATE_REFUSED,
    OPEN_STATES,
    TERMINAL_STATES,
)
from .concurrency import conditional_update
from .signing_service import ClaimSigner, InvalidCredentialError
from slipsafe.time_utils import utcnow


class InvalidAmountError(Exception):
    """Raised when a refund amount is invalid. Caught before any write."""
    pass


@dataclass
class AttemptContext:
    """Who is acting and from where; all optional for unauthenticated verification."""
    merchant_id: int | None = None
    merchant_user_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class VerificationOutcome:
    status: str
    claim: Claim | None = None
    purchase: Purchase | None = None
    state: str | None = None
    comparison: dict | None = None
    message: str | None = None
    pin_correct: bool | None = None
    verification: ClaimVerification | None = None
    fraud_events: list[FraudEvent] = field(default_factory=list)

    @property
    def is_match(self) -> bool:
        return self.status == STATUS_MATCH

    @property
    def already_terminal(self) -> bool:
        return self.status == STATUS_ALREADY_REDEEMED

    def to_dict(self) -> dict:
        """Merchant-facing view. Never includes the PIN."""
        claim = None
        if self.claim is not None and self.status != STATUS_INVALID:
            claim = self.claim.to_dict()
            claim["stored_state"] = self.claim.state
            claim["state"] = self.state
        purchase = None
        if self.purchase is not None and self.status in (STATUS_MATCH, STATUS_ALREADY_REDEEMED):
            purchase = {
                "merchant": self.purchase.merchant,
                "purchase_date": self.purchase.purchase_date,
                "total_cents": self.purchase.total_cents,
            }
        return {
            "status": self.status,
            "state": self.state,
            "message": self.message,
            "claim": claim,
            "purchase": purchase,
            "comparison": self.comparison,
            "verification_id": self.verification.id if self.verification else None,
            "fraud_events": [event.id for event in self.fraud_events],
        }


# =============================================================================
# CHECKS (read-only, no audit write)
# =============================================================================

def _pins_equal(attempted: str | None, stored: str) -> bool:
    if not attempted:
        return False
    return hmac.compare_digest(str(attempted).encode("utf-8"), stored.encode("utf-8"))


def compare_credential(claim: Claim, purchase: Purchase | None, payload: dict) -> dict:
    """
    Compare a decoded credential to the stored claim.

    Exact merchant name and date equality, amount equality to the cent.
    The fingerprint is reported but not decisive: the claim's denormalized
    fields are authoritative even if the purchase row was edited later.
    """
    comparison = {
        "claim_code_match": payload["claim_code"] == claim.claim_code,
        "merchant_match": payload["merchant_name"] == claim.merchant_name,
        "date_match": payload["purchase_date"] == claim.purchase_date,
        "amount_match": payload["amount_cents"] == claim.original_amount_cents,
        "fingerprint_match": (
            purchase is not None
            and payload["purchase_fingerprint"] == claim_service.purchase_fingerprint(purchase)
        ),
    }
    comparison["match"] = all(
        comparison[key] for key in ("claim_code_match", "merchant_match", "date_match", "amount_match")
    )
    return comparison


def _evaluate(claim_code: str | None, pin: str | None, payload: dict | None = None) -> VerificationOutcome:
    """Run the ordered checks. Reads only."""
    claim = claim_service.get_claim_by_code(claim_code)
    if claim is None:
        return VerificationOutcome(status=STATUS_INVALID, message="Unknown claim code")

    purchase = claim.purchase
    now = utcnow()
    state = claim_service.effective_state(claim, now)

    if claim.state in OPEN_STATES and claim_service.is_expired(claim, now):
        return VerificationOutcome(
            status=STATUS_EXPIRED,
            claim=claim,
            purchase=purchase,
            state=state,
            pin_correct=_pins_equal(pin, claim.pin),
            message="Claim has expired",
        )

    if fraud_service.is_rate_limited(claim.id, now=now):
        return VerificationOutcome(
            status=STATUS_RATE_LIMITED,
            claim=claim,
            purchase=purchase,
            state=state,
            message="Too many failed PIN attempts; try again later",
        )

    if not _pins_equal(pin, claim.pin):
        return VerificationOutcome(
            status=STATUS_NO_MATCH,
            claim=claim,
            purchase=purchase,
            state=state,
            pin_correct=False,
            message="PIN does not match",
        )

    comparison = None
    if payload is not None:
        comparison = compare_credential(claim, purchase, payload)
        if not comparison["match"]:
            return VerificationOutcome(
                status=STATUS_NO_MATCH,
                claim=claim,
                purchase=purchase,
                state=state,
                comparison=comparison,
                pin_correct=True,
                message="Credential does not match the stored claim",
            )

    if state in TERMINAL_STATES:
        return VerificationOutcome(
            status=STATUS_ALREADY_REDEEMED,
            claim=claim,
            purchase=purchase,
            state=state,
            comparison=comparison,
            pin_correct=True,
            message=f"Claim is already {state}",
        )

    return VerificationOutcome(
        status=STATUS_MATCH,
        claim=claim,
        purchase=purchase,
        state=state,
        comparison=comparison,
        pin_correct=True,
    )


def _result_for(outcome: VerificationOutcome) -> str:
    if outcome.status == STATUS_MATCH:
        return RESULT_APPROVED
    if outcome.status == STATUS_RATE_LIMITED:
        return RESULT_FRAUD_SUSPECTED
    if outcome.status == STATUS_NO_MATCH and outcome.comparison is not None:
        return RESULT_FRAUD_SUSPECTED
    return RESULT_REJECTED


def _finish(
    outcome: VerificationOutcome,
    *,
    action: str,
    claim_code: str | None,
    pin: str | None,
    context: AttemptContext,
    result: str | None = None,
    refund_amount_cents: int | None = None,
    notes: str | None = None,
) -> VerificationOutcome:
    """Write the single audit row for this call, then run fraud detection on it."""
    claim = outcome.claim
    outcome.verification = audit_service.record_attempt(
        claim_id=claim.id if claim is not None else None,
        claim_code=claim_code,
        action=action,
        result=result or _result_for(outcome),
        status=outcome.status,
        attempted_pin=pin,
        pin_correct=outcome.pin_correct,
        merchant_id=context.merchant_id,
        merchant_user_id=context.merchant_user_id,
        refund_amount_cents=refund_amount_cents,
        notes=notes if notes is not None else (outcome.message if outcome.status != STATUS_MATCH else None),
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )
    outcome.fraud_events = fraud_service.inspect_attempt(claim, outcome.verification)

    if outcome.status == STATUS_RATE_LIMITED:
        current_app.logger.warning("PIN throttle refused %s on claim %s", action, claim.id)
    return outcome


def _decode(token: str | None, signer: ClaimSigner | None) -> dict | None:
    if token is None:
        return None
    if signer is None:
        raise InvalidCredentialError("No signer configured")
    return signer.load(token)


def _invalid_credential(
    action: str,
    claim_code: str | None,
    pin: str | None,
    context: AttemptContext,
    exc: Exception,
) -> VerificationOutcome:
    """A forged credential alongside a typed code is still attributed to that claim."""
    claim = claim_service.get_claim_by_code(claim_code) if claim_code else None
    outcome = VerificationOutcome(status=STATUS_INVALID, claim=claim, message=str(exc))
    return _finish(
        outcome,
        action=action,
        claim_code=claim.claim_code if claim is not None else None,
        pin=pin,
        context=context,
        result=RESULT_FRAUD_SUSPECTED,
    )


# =============================================================================
# VERIFICATION (read-only)
# =============================================================================

def verify_claim(
    claim_code: str | None,
    pin: str | None,
    *,
    token: str | None = None,
    signer: ClaimSigner | None = None,
    context: AttemptContext | None = None,
) -> VerificationOutcome:
    """
    Verify a claim code + PIN, optionally with the scanned credential.

    When token is given it is decoded first; a signature or schema failure
    is INVALID and the claim code inside the token is used if claim_code
    was not typed.

    Never changes claim state. Writes exactly one audit row.
    """
    context = context or AttemptContext()
    try:
        payload = _decode(token, signer)
    except InvalidCredentialError as exc:
        return _invalid_credential(ACTION_VERIFY, claim_code, pin, context, exc)

    if payload is not None and not claim_code:
        claim_code = payload["claim_code"]

    outcome = _evaluate(claim_code, pin, payload)
    return _finish(outcome, action=ACTION_VERIFY, claim_code=claim_code, pin=pin, context=context)


# =============================================================================
# REDEMPTION (mutating)
# =============================================================================

def _validate_refund(claim: Claim | None, is_partial: bool, refund_amount_cents) -> int | None:
    """
    Returns the amount to stamp as redeemed_amount_cents.

    Raises InvalidAmountError for any amount that could not be redeemed.
    """
    if refund_amount_cents is not None and (
        not isinstance(refund_amount_cents, int) or isinstance(refund_amount_cents, bool)
    ):
        raise InvalidAmountError("refund_amount_cents must be an integer")
    if refund_amount_cents is not None and refund_amount_cents <= 0:
        raise InvalidAmountError("Refund amount must be positive")

    if claim is None:
        return refund_amount_cents

    if is_partial:
        if refund_amount_cents is None:
            raise InvalidAmountError("Partial redemption requires refund_amount_cents")
        if refund_amount_cents >= claim.original_amount_cents:
            raise InvalidAmountError(
                f"Partial refund {refund_amount_cents} must be less than original amount "
                f"{claim.original_amount_cents}"
            )
        return refund_amount_cents

    if refund_amount_cents is not None and refund_amount_cents != claim.original_amount_cents:
        raise InvalidAmountError(
            f"Full redemption refunds the original amount {claim.original_amount_cents}; "
            "use a partial redemption for other amounts"
        )
    return claim.original_amount_cents


def _transition(claim: Claim, values: dict, from_states=OPEN_STATES) -> bool:
    """Compare-and-swap on state; also requires the claim to be unexpired."""
    query = db.session.query(Claim).filter(
        Claim.id == claim.id,
        Claim.state.in_(tuple(from_states)),
        Claim.expires_at > utcnow(),
    )
    return conditional_update(query, values)


def _lost_race(outcome: VerificationOutcome) -> VerificationOutcome:
    """Re-observe the claim after a failed conditional update."""
    claim = outcome.claim
    db.session.refresh(claim)
    state = claim_service.effective_state(claim)
    outcome.state = state
    if claim.state not in OPEN_STATES:
        outcome.status = STATUS_ALREADY_REDEEMED
        outcome.message = f"AlreadyTerminal: claim is already {state}"
    else:
        outcome.status = STATUS_EXPIRED
        outcome.message = "Claim expired before it could be updated"
    return outcome


def redeem_claim(
    claim_code: str | None,
    pin: str | None,
    *,
    is_partial: bool = False,
    refund_amount_cents: int | None = None,
    notes: str | None = None,
    token: str | None = None,
    signer: ClaimSigner | None = None,
    context: AttemptContext,
) -> VerificationOutcome:
    """
    Redeem a claim fully or partially on behalf of a merchant.

    Args:
        claim_code / pin: As presented by the customer
        is_partial: Partial refund (requires refund_amount_cents < original)
        refund_amount_cents: Amount approved; defaults to original for full
        notes: Free text stored on the audit row
        token: Optional scanned credential, verified like verify_claim
        context: Acting merchant and staff member (required)

    Returns:
        VerificationOutcome with status MATCH and state redeemed/partial on
        success; otherwise the verification status (ALREADY_REDEEMED for
        terminal claims, including the loser of a concurrent redemption).

    Raises:
        MerchantAuthError: Merchant or staff member missing or inactive
        InvalidAmountError: Amount invalid (no audit row, no mutation)
    """
    require_active_merchant(context.merchant_id, context.merchant_user_id)
    _validate_refund(None, is_partial, refund_amount_cents)

    try:
        payload = _decode(token, signer)
    except InvalidCredentialError as exc:
        return _invalid_credential(ACTION_REDEEM, claim_code, pin, context, exc)
    if payload is not None and not claim_code:
        claim_code = payload["claim_code"]

    outcome = _evaluate(claim_code, pin, payload)
    if not outcome.is_match:
        return _finish(
            outcome, action=ACTION_REDEEM, claim_code=claim_code, pin=pin, context=context,
            refund_amount_cents=refund_amount_cents, notes=notes,
        )

    # Amounts are only compared against the claim once the PIN has matched.
    claim = outcome.claim
    redeemed_amount = _validate_refund(claim, is_partial, refund_amount_cents)
    new_state = CLAIM_STATE_PARTIAL if is_partial else CLAIM_STATE_REDEEMED
    swapped = _transition(claim, {
        "state": new_state,
        "redeemed_amount_cents": redeemed_amount,
        "redeemed_at": utcnow(),
        "redeemed_by_merchant_id": context.merchant_id,
        "redeemed_by_user_id": context.merchant_user_id,
    })

    if not swapped:
        outcome = _lost_race(outcome)
        return _finish(
            outcome, action=ACTION_REDEEM, claim_code=claim_code, pin=pin, context=context,
            refund_amount_cents=refund_amount_cents, notes=notes,
        )

    db.session.refresh(claim)
    outcome.state = claim.state
    current_app.logger.info(
        "Claim %s %s by merchant %s (staff %s), amount %s",
        claim.id, new_state, context.merchant_id, context.merchant_user_id, redeemed_amount,
    )
    return _finish(
        outcome, action=ACTION_REDEEM, claim_code=claim_code, pin=pin, context=context,
        result=RESULT_PARTIAL_APPROVED if is_partial else RESULT_APPROVED,
        refund_amount_cents=redeemed_amount, notes=notes,
    )


def refuse_claim(
    claim_code: str | None,
    pin: str | None,
    *,
    reason: str | None = None,
    token: str | None = None,
    signer: ClaimSigner | None = None,
    context: AttemptContext,
) -> VerificationOutcome:
    """
    Staff decline a technically valid claim (e.g. damaged item outside
    policy). Drives the claim to the terminal refused state.

    This is a deliberate outcome, not an error; the audit row is
    result=rejected with the reason as notes.
    """
    require_active_merchant(context.merchant_id, context.merchant_user_id)

    try:
        payload = _decode(token, signer)
    except InvalidCredentialError as exc:
        return _invalid_credential(ACTION_REFUSE, claim_code, pin, context, exc)
    if payload is not None and not claim_code:
        claim_code = payload["claim_code"]

    outcome = _evaluate(claim_code, pin, payload)
    if not outcome.is_match:
        return _finish(outcome, action=ACTION_REFUSE, claim_code=claim_code, pin=pin, context=context, notes=reason)

    claim = outcome.claim
    swapped = _transition(claim, {
        "state": CLAIM_STATE_REFUSED,
        "redeemed_at": utcnow(),
        "redeemed_by_merchant_id": context.merchant_id,
        "redeemed_by_user_id": context.merchant_user_id,
    })

    if not swapped:
        outcome = _lost_race(outcome)
        return _finish(outcome, action=ACTION_REFUSE, claim_code=claim_code, pin=pin, context=context, notes=reason)

    db.session.refresh(claim)
    outcome.state = claim.state
    current_app.logger.info(
        "Claim %s refused by merchant %s (staff %s)", claim.id, context.merchant_id, context.merchant_user_id,
    )
    return _finish(
        outcome, action=ACTION_REFUSE, claim_code=claim_code, pin=pin, context=context,
        result=RESULT_REJECTED, notes=reason,
    )


def mark_pending(
    claim_code: str | None,
    pin: str | None,
    *,
    context: AttemptContext,
) -> VerificationOutcome:
    """
    Move an issued claim to pending while staff process it.

    Already-pending claims are left as they are and reported as MATCH.
    """
    require_active_merchant(context.merchant_id, context.merchant_user_id)

    outcome = _evaluate(claim_code, pin)
    if outcome.is_match and outcome.claim.state == CLAIM_STATE_ISSUED:
        claim = outcome.claim
        swapped = _transition(claim, {"state": CLAIM_STATE_PENDING}, from_states=(CLAIM_STATE_ISSUED,))
        db.session.refresh(claim)
        outcome.state = claim_service.effective_state(claim)
        if not swapped and claim.state != CLAIM_STATE_PENDING:
            outcome = _lost_race(outcome)

    return _finish(outcome, action=ACTION_PENDING, claim_code=claim_code, pin=pin, context=context)
