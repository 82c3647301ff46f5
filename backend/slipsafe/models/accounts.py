from __future__ import annotations

from ..extensions import db
from slipsafe.time_utils import to_utc_z


class User(db.Model):
    """
    Consumer account that owns purchases and claims.

    WHY: Claims are issued to the purchase owner only. Account management
    itself lives outside the claim subsystem; this table carries just what
    issuance and consumer login need.
    """
    __tablename__ = "users"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    full_name = db.Column(db.String(255), nullable=True)
    password_hash = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class SessionToken(db.Model):
    """
    Bearer session for either a consumer or a merchant staff member.

    WHY: Issuance requires an authenticated owner, redemption requires an
    authenticated merchant context. One table serves both; exactly one of
    user_id / merchant_user_id is set.

    SECURITY NOTES:
    - Tokens stored hashed in database (SHA-256)
    - Absolute timeout (SESSION_TIMEOUT_HOURS)
    - Revocable on logout or deactivation
    - merchant_id is captured at login and immutable for the session lifetime
    """
    __tablename__ = "session_tokens"
    __table_args__ = (
        db.CheckConstraint(
            "(user_id IS NOT NULL AND merchant_user_id IS NULL) OR "
            "(user_id IS NULL AND merchant_user_id IS NOT NULL)",
            name="ck_session_tokens_single_principal",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    merchant_user_id = db.Column(db.Integer, db.ForeignKey("merchant_users.id"), nullable=True, index=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=True, index=True)

    # Token hash (never store plaintext tokens!)
    token_hash = db.Column(db.String(255), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_reason = db.Column(db.String(255), nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    user = db.relationship("User", backref=db.backref("sessions", lazy=True))
    merchant_user = db.relationship("MerchantUser", backref=db.backref("sessions", lazy=True))
    merchant = db.relationship("Merchant")
