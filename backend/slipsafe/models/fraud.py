from __future__ import annotations

from ..extensions import db
from slipsafe.time_utils import to_utc_z


class FraudEvent(db.Model):
    """
    Suspicious pattern detected from the verification audit trail.

    Created once per incident by the fraud detector. Resolution is the only
    mutation and never reverses claim state.

    metadata_text is opaque; no application logic branches on it.
    """
    __tablename__ = "fraud_events"
    __table_args__ = (
        db.Index("ix_fraud_events_claim_type", "claim_id", "event_type"),
        db.Index("ix_fraud_events_resolved_created", "resolved", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    claim_id = db.Column(db.Integer, db.ForeignKey("claims.id"), nullable=True, index=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    # Acting merchant when known (scopes review queues)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=True, index=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)
    severity = db.Column(db.String(16), nullable=False, default="low")  # low, medium, high
    description = db.Column(db.Text, nullable=False)
    metadata_text = db.Column("metadata", db.Text, nullable=True)

    resolved = db.Column(db.Boolean, nullable=False, default=False, index=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_by = db.Column(db.Integer, db.ForeignKey("merchant_users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    claim = db.relationship("Claim", backref=db.backref("fraud_events", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "claim_id": self.claim_id,
            "purchase_id": self.purchase_id,
            "user_id": self.user_id,
            "merchant_id": self.merchant_id,
            "event_type": self.event_type,
            "severity": self.severity,
            "description": self.description,
            "metadata": self.metadata_text,
            "resolved": self.resolved,
            "resolved_at": to_utc_z(self.resolved_at),
            "resolved_by": self.resolved_by,
            "created_at": to_utc_z(self.created_at),
        }
