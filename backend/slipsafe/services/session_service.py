# Overview: Service-layer operations for session; encapsulates business logic and database work.

"""
Session Token Management Service

WHY: Consumers need a session to issue claims; merchant staff need one to
redeem. Tokens are cryptographically secure, hashed in database, and
time-limited.

SECURITY FEATURES:
- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage (fast, one-way)
- Absolute timeout (SESSION_TIMEOUT_HOURS)
- Revocable on logout
- Merchant sessions are revoked when the merchant or staff member is deactivated
"""

import secrets
import hashlib
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SessionToken, User, MerchantUser
from slipsafe.time_utils import utcnow


DEFAULT_SESSION_TIMEOUT_HOURS = 12


@dataclass
class SessionContext:
    """
    Session context returned by validate_session.

    Exactly one of user / merchant_user is set.
    """
    session: SessionToken
    user: User | None = None
    merchant_user: MerchantUser | None = None

    @property
    def merchant_id(self) -> int | None:
        return self.merchant_user.merchant_id if self.merchant_user else None

    @property
    def is_merchant(self) -> bool:
        return self.merchant_user is not None


def generate_token() -> str:
    """64-character hex string (32 bytes of entropy); sent to client, never stored."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """SHA-256 is sufficient for high-entropy tokens."""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_session(
    *,
    user_id: int | None = None,
    merchant_user_id: int | None = None,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[SessionToken, str]:
    """
    Create a session for a consumer or a merchant staff member.

    Returns (session_record, plaintext_token).

    Raises ValueError unless exactly one principal is given and it exists.
    """
    if (user_id is None) == (merchant_user_id is None):
        raise ValueError("Exactly one of user_id or merchant_user_id is required")

    merchant_id = None
    if merchant_user_id is not None:
        staff = db.session.get(MerchantUser, merchant_user_id)
        if not staff:
            raise ValueError("Merchant user not found")
        merchant_id = staff.merchant_id
    elif db.session.get(User, user_id) is None:
        raise ValueError("User not found")

    plaintext_token = generate_token()
    now = utcnow()
    hours = current_app.config.get("SESSION_TIMEOUT_HOURS", DEFAULT_SESSION_TIMEOUT_HOURS)

    session = SessionToken(
        user_id=user_id,
        merchant_user_id=merchant_user_id,
        merchant_id=merchant_id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        last_used_at=now,
        expires_at=now + timedelta(hours=hours),
        user_agent=user_agent,
        ip_address=ip_address,
        is_revoked=False,
    )

    db.session.add(session)
    db.session.commit()

    return session, plaintext_token


def validate_session(token: str) -> SessionContext | None:
    """
    Validate session token and return SessionContext if valid.

    Returns None if the token is unknown, expired or revoked, or if its
    principal (or the principal's merchant) has been deactivated.
    """
    now = utcnow()
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False
    ).first()

    if not session:
        return None

    if session.expires_at < now:
        return None

    if session.merchant_user_id is not None:
        staff = session.merchant_user
        merchant = session.merchant
        if not staff or not staff.is_active or not merchant or not merchant.is_active:
            _revoke(session, "Merchant or staff deactivated")
            return None
        context = SessionContext(session=session, merchant_user=staff)
    else:
        user = session.user
        if not user or not user.is_active:
            _revoke(session, "User account deactivated")
            return None
        context = SessionContext(session=session, user=user)

    session.last_used_at = now
    db.session.commit()
    return context


def revoke_session(token: str, reason: str = "Logout") -> bool:
    """Returns True if session was revoked, False if not found."""
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False
    ).first()

    if not session:
        return False

    _revoke(session, reason)
    return True


def _revoke(session: SessionToken, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason
    db.session.commit()
