from __future__ import annotations

from ..extensions import db
from slipsafe.time_utils import to_utc_z


MERCHANT_USER_ROLES = ("owner", "manager", "staff")


class Merchant(db.Model):
    """
    Registered merchant business that verifies and redeems claims.

    The claim subsystem only needs identity and is_active; an inactive
    merchant can still be logged against in the audit trail but cannot
    redeem.
    """
    __tablename__ = "merchants"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    business_name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    return_policy_days = db.Column(db.Integer, nullable=False, default=30)
    warranty_months = db.Column(db.Integer, nullable=False, default=12)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_name": self.business_name,
            "email": self.email,
            "is_active": self.is_active,
            "return_policy_days": self.return_policy_days,
            "warranty_months": self.warranty_months,
            "created_at": to_utc_z(self.created_at),
        }


class MerchantUser(db.Model):
    """
    Staff member at a merchant who performs verifications and redemptions.

    Every redemption is attributed to one of these rows.
    """
    __tablename__ = "merchant_users"
    __table_args__ = (
        db.UniqueConstraint("merchant_id", "email", name="uq_merchant_users_merchant_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=False, index=True)
    email = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255), nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(16), nullable=False, default="staff")  # owner, manager, staff
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    merchant = db.relationship("Merchant", backref=db.backref("staff", lazy=True))

    @property
    def can_review(self) -> bool:
        return self.role in ("owner", "manager")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "is_active": self.is_active,
            "last_login_at": to_utc_z(self.last_login_at),
        }
