from __future__ import annotations

from ..extensions import db
from slipsafe.time_utils import to_utc_z, cents_to_str


class Claim(db.Model):
    """
    Single-use credential asserting a purchase is eligible for return,
    exchange or warranty service.

    LIFECYCLE:
    1. issued: minted for the purchase owner
    2. pending: merchant staff opened the claim for processing
    3. redeemed / partial / refused: terminal merchant decision
    4. expired: past expires_at; evaluated at read time, never swept

    DESIGN PRINCIPLES:
    - merchant_name, purchase_date and original_amount_cents are copied from
      the purchase at issuance so the claim stays verifiable if the purchase
      is later edited
    - Exactly one terminal transition ever succeeds (compare-and-swap on state)
    - Terminal claims are immutable audit artifacts
    """
    __tablename__ = "claims"
    __table_args__ = (
        db.Index("ix_claims_purchase_type_state", "purchase_id", "claim_type", "state"),
        db.Index("ix_claims_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    claim_code = db.Column(db.String(32), nullable=False, unique=True, index=True)
    pin = db.Column(db.String(6), nullable=False)

    state = db.Column(db.String(16), nullable=False, default="issued", index=True)
    claim_type = db.Column(db.String(16), nullable=False, default="return")  # return, warranty, exchange

    original_amount_cents = db.Column(db.Integer, nullable=False)
    redeemed_amount_cents = db.Column(db.Integer, nullable=True)

    # Denormalized from the purchase at issuance
    merchant_name = db.Column(db.String(255), nullable=False)
    purchase_date = db.Column(db.String(10), nullable=False)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    redeemed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    redeemed_by_merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=True)
    redeemed_by_user_id = db.Column(db.Integer, db.ForeignKey("merchant_users.id"), nullable=True)

    # Signed credential wrapped in the verifier URL
    qr_code_data = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    purchase = db.relationship("Purchase", backref=db.backref("claims", lazy=True))
    user = db.relationship("User", backref=db.backref("claims", lazy=True))

    def to_dict(self, include_secret: bool = False) -> dict:
        data = {
            "id": self.id,
            "purchase_id": self.purchase_id,
            "user_id": self.user_id,
            "claim_code": self.claim_code,
            "state": self.state,
            "claim_type": self.claim_type,
            "original_amount_cents": self.original_amount_cents,
            "original_amount": cents_to_str(self.original_amount_cents),
            "redeemed_amount_cents": self.redeemed_amount_cents,
            "redeemed_amount": cents_to_str(self.redeemed_amount_cents),
            "merchant_name": self.merchant_name,
            "purchase_date": self.purchase_date,
            "expires_at": to_utc_z(self.expires_at),
            "redeemed_at": to_utc_z(self.redeemed_at),
            "redeemed_by_merchant_id": self.redeemed_by_merchant_id,
            "redeemed_by_user_id": self.redeemed_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
        if include_secret:
            data["pin"] = self.pin
            data["qr_code_data"] = self.qr_code_data
        return data


class ClaimVerification(db.Model):
    """
    One row per verification / redemption / refusal attempt, whatever the outcome.

    WHY: Forensic trail for disputes and the source of truth for PIN
    throttling. Unknown-code probes are logged with claim_id NULL and the
    attempted code in claim_code_attempted.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.
    """
    __tablename__ = "claim_verifications"
    __table_args__ = (
        db.Index("ix_claim_verifications_claim_created", "claim_id", "created_at"),
        db.Index("ix_claim_verifications_claim_pin", "claim_id", "pin_correct", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    claim_id = db.Column(db.Integer, db.ForeignKey("claims.id"), nullable=True, index=True)
    claim_code_attempted = db.Column(db.String(64), nullable=True)

    # Nullable: self-checkout and unauthenticated probing are still logged
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=True, index=True)
    merchant_user_id = db.Column(db.Integer, db.ForeignKey("merchant_users.id"), nullable=True)

    action = db.Column(db.String(16), nullable=False, default="verify")  # verify, redeem, refuse, pending
    result = db.Column(db.String(32), nullable=False)  # approved, partial_approved, rejected, fraud_suspected
    status = db.Column(db.String(32), nullable=False)  # caller-visible status (MATCH, EXPIRED, ...)

    attempted_pin = db.Column(db.String(16), nullable=True)
    # NULL when the PIN was never compared (unknown code, rate limited)
    pin_correct = db.Column(db.Boolean, nullable=True)

    refund_amount_cents = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    claim = db.relationship("Claim", backref=db.backref("verifications", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "claim_id": self.claim_id,
            "claim_code_attempted": self.claim_code_attempted,
            "merchant_id": self.merchant_id,
            "merchant_user_id": self.merchant_user_id,
            "action": self.action,
            "result": self.result,
            "status": self.status,
            "pin_correct": self.pin_correct,
            "refund_amount_cents": self.refund_amount_cents,
            "notes": self.notes,
            "ip_address": self.ip_address,
            "created_at": to_utc_z(self.created_at),
        }
