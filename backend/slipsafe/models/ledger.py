from __future__ import annotations

from ..extensions import db
from slipsafe.time_utils import to_utc_z, cents_to_str


class Purchase(db.Model):
    """
    Purchase ledger row: the system of record for a digitized receipt.

    WHY: The claim subsystem reads one purchase per claim and never mutates
    it. Receipt capture (OCR, policy extraction) writes these rows upstream.

    merchant_id is an optional attribution to a registered merchant. When
    known, it is the "originating merchant context" used for cross-merchant
    fraud detection.
    """
    __tablename__ = "purchases"
    __table_args__ = (
        db.Index("ix_purchases_user_date", "user_id", "purchase_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    merchant = db.Column(db.String(255), nullable=False)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=True, index=True)

    # YYYY-MM-DD, as printed on the receipt
    purchase_date = db.Column(db.String(10), nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)

    # SHA-256 of "merchant|date|total"
    hash = db.Column(db.String(64), nullable=False, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", backref=db.backref("purchases", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "merchant": self.merchant,
            "merchant_id": self.merchant_id,
            "purchase_date": self.purchase_date,
            "total_cents": self.total_cents,
            "total": cents_to_str(self.total_cents),
            "hash": self.hash,
            "created_at": to_utc_z(self.created_at),
        }
