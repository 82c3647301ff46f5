"""
Claim Issuance Service

WHY: Turns a verified purchase into a portable, time-bounded, single-use
credential the consumer can present at the merchant without handing over
the receipt.

DESIGN PRINCIPLES:
- Only the purchase owner can issue a claim
- Issuance is idempotent per (purchase, claim_type) while an unexpired,
  non-terminal claim exists
- Claim code: 16 symbols from a 32-symbol unambiguous alphabet (80 bits),
  URL-safe and typeable
- PIN: 6 digits. Deliberately small; brute force is stopped by throttling
  in the fraud detector, not by PIN entropy
- Expiry is evaluated lazily against expires_at, never swept

LIFECYCLE:
issued -> pending -> {redeemed, partial, refused}
issued/pending -> expired (read-time property)
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from urllib.parse import urlencode

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Claim, Purchase
from . import purchase_service
from .signing_service import ClaimSigner
from slipsafe.time_utils import utcnow


class ClaimError(Exception):
    """Raised for claim operation errors."""
    pass


class PurchaseNotFoundError(ClaimError):
    pass


class ClaimNotFoundError(ClaimError):
    pass


class NotOwnerError(ClaimError):
    pass


class InvalidClaimTypeError(ClaimError):
    pass


# =============================================================================
# CLAIM CONSTANTS
# =============================================================================

CLAIM_STATE_ISSUED = "issued"
CLAIM_STATE_PENDING = "pending"
CLAIM_STATE_REDEEMED = "redeemed"
CLAIM_STATE_PARTIAL = "partial"
CLAIM_STATE_REFUSED = "refused"
CLAIM_STATE_EXPIRED = "expired"

OPEN_STATES = (CLAIM_STATE_ISSUED, CLAIM_STATE_PENDING)
TERMINAL_STATES = (CLAIM_STATE_REDEEMED, CLAIM_STATE_PARTIAL, CLAIM_STATE_REFUSED, CLAIM_STATE_EXPIRED)

CLAIM_TYPES = ("return", "warranty", "exchange")

# Crockford base32 (no I, L, O, U): survives being read aloud and typed at a till
CLAIM_CODE_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
CLAIM_CODE_LENGTH = 16
PIN_LENGTH = 6

DEFAULT_VALIDITY_DAYS = 90


# =============================================================================
# SECRET GENERATION
# =============================================================================

def generate_claim_code() -> str:
    return "".join(secrets.choice(CLAIM_CODE_ALPHABET) for _ in range(CLAIM_CODE_LENGTH))


def generate_pin() -> str:
    return f"{secrets.randbelow(10 ** PIN_LENGTH):0{PIN_LENGTH}d}"


def normalize_claim_code(code: str | None) -> str:
    """Uppercase and strip separators a human may have typed."""
    if not code:
        return ""
    return "".join(ch for ch in code.upper() if ch not in " -")


# =============================================================================
# STATE HELPERS
# =============================================================================

def is_expired(claim: Claim, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return claim.expires_at <= now


def effective_state(claim: Claim, now: datetime | None = None) -> str:
    """
    State as observed at `now`.

    A non-terminal claim past its deadline reads as expired without any
    write; terminal states are reported unchanged.
    """
    if claim.state in OPEN_STATES and is_expired(claim, now):
        return CLAIM_STATE_EXPIRED
    return claim.state


def purchase_fingerprint(purchase: Purchase) -> str:
    if purchase.hash:
        return purchase.hash
    return purchase_service.generate_hash(purchase.merchant, purchase.purchase_date, purchase.total_cents)


def build_credential_payload(claim: Claim, purchase: Purchase) -> dict:
    """Minimum payload to re-identify the claim and detect tampering."""
    return {
        "claim_code": claim.claim_code,
        "merchant_name": claim.merchant_name,
        "purchase_date": claim.purchase_date,
        "amount_cents": claim.original_amount_cents,
        "purchase_fingerprint": purchase_fingerprint(purchase),
    }


def build_qr_payload(verifier_url: str, credential: str) -> str:
    separator = "&" if "?" in verifier_url else "?"
    return f"{verifier_url}{separator}{urlencode({'token': credential})}"


# =============================================================================
# ISSUANCE
# =============================================================================

def issue_claim(
    purchase_id: int,
    user_id: int,
    claim_type: str,
    signer: ClaimSigner,
    verifier_url: str,
    validity_days: int = DEFAULT_VALIDITY_DAYS,
) -> tuple[Claim, bool]:
    """
    Issue a claim for a purchase (status: issued).

    Args:
        purchase_id: Purchase being claimed against
        user_id: Consumer requesting the claim (must own the purchase)
        claim_type: return, warranty or exchange
        signer: Credential signer built at app startup
        verifier_url: Base URL embedded in the QR payload
        validity_days: Claim lifetime

    Returns:
        (claim, created). created is False when an existing open claim of
        the same type was returned unchanged.

    Raises:
        InvalidClaimTypeError, PurchaseNotFoundError, NotOwnerError
    """
    if claim_type not in CLAIM_TYPES:
        raise InvalidClaimTypeError(
            f"Invalid claim type '{claim_type}'. Must be one of: {', '.join(CLAIM_TYPES)}"
        )

    purchase = purchase_service.get_purchase(purchase_id)
    if purchase is None:
        raise PurchaseNotFoundError(f"Purchase {purchase_id} not found")

    if purchase.user_id != user_id:
        raise NotOwnerError(f"Purchase {purchase_id} does not belong to user {user_id}")

    now = utcnow()

    existing = _find_open_claim(purchase.id, claim_type, now)
    if existing is not None:
        return existing, False

    claim = Claim(
        purchase_id=purchase.id,
        user_id=user_id,
        claim_code=generate_claim_code(),
        pin=generate_pin(),
        state=CLAIM_STATE_ISSUED,
        claim_type=claim_type,
        original_amount_cents=purchase.total_cents,
        merchant_name=purchase.merchant,
        purchase_date=purchase.purchase_date,
        expires_at=now + timedelta(days=validity_days),
        created_at=now,
    )
    credential = signer.sign(build_credential_payload(claim, purchase))
    claim.qr_code_data = build_qr_payload(verifier_url, credential)

    db.session.add(claim)
    try:
        db.session.commit()
    except IntegrityError:
        # claim_code collision (80-bit space; effectively never)
        db.session.rollback()
        raise ClaimError("Could not allocate a unique claim code, please retry")

    current_app.logger.info(
        "Issued %s claim %s for purchase %s (expires %s)",
        claim_type, claim.id, purchase.id, claim.expires_at.isoformat(),
    )
    return claim, True


def _find_open_claim(purchase_id: int, claim_type: str, now: datetime) -> Claim | None:
    return db.session.query(Claim).filter(
        Claim.purchase_id == purchase_id,
        Claim.claim_type == claim_type,
        Claim.state.in_(OPEN_STATES),
        Claim.expires_at > now,
    ).order_by(Claim.created_at.desc()).first()


# =============================================================================
# LOOKUP
# =============================================================================

def get_claim_by_code(claim_code: str) -> Claim | None:
    code = normalize_claim_code(claim_code)
    if not code:
        return None
    return db.session.query(Claim).filter_by(claim_code=code).first()


def get_user_claim(user_id: int, claim_code: str) -> Claim:
    claim = get_claim_by_code(claim_code)
    if claim is None or claim.user_id != user_id:
        raise ClaimNotFoundError(f"Claim {claim_code} not found")
    return claim


def list_user_claims(user_id: int, state: str | None = None) -> list[Claim]:
    """
    List a consumer's claims, newest first.

    state filters on the effective state, so "expired" includes open
    claims past their deadline and "issued" excludes them.
    """
    claims = db.session.query(Claim).filter_by(user_id=user_id).order_by(
        Claim.created_at.desc(), Claim.id.desc()
    ).all()
    if state is None:
        return claims
    now = utcnow()
    return [claim for claim in claims if effective_state(claim, now) == state]


def claim_summary(claim: Claim, now: datetime | None = None, include_secret: bool = False) -> dict:
    """Serialized claim with the read-time effective state."""
    data = claim.to_dict(include_secret=include_secret)
    data["stored_state"] = claim.state
    data["state"] = effective_state(claim, now)
    return data
