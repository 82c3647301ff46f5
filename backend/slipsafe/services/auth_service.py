# Overview: Service-layer operations for accounts and merchant staff; encapsulates business logic and database work.

"""
Authentication Service

WHY: Every redemption must be attributable to a merchant and a staff
member, and every claim to its owning consumer. Uses bcrypt for password
hashing and validates password strength.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters, mixed case, digit and special character
- Inactive merchants and staff cannot authenticate
- Session tokens managed separately (see session_service.py)
"""

import bcrypt
import re
from ..extensions import db
from ..models import Merchant, MerchantUser, User
from ..models.merchants import MERCHANT_USER_ROLES
from slipsafe.time_utils import utcnow


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


class MerchantAuthError(Exception):
    """Raised when a merchant or staff member cannot act."""
    pass


class AccountError(Exception):
    """Raised for account creation errors."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """Hash password using bcrypt with cost factor 12."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Returns True if password matches hash, False otherwise."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        # Malformed hash in the database
        return False


# =============================================================================
# CONSUMERS
# =============================================================================

def create_user(email: str, password: str, full_name: str | None = None) -> User:
    email = (email or "").strip().lower()
    if not email:
        raise AccountError("email is required")
    if db.session.query(User).filter_by(email=email).first():
        raise AccountError(f"User with email {email} already exists")

    user = User(
        email=email,
        full_name=full_name,
        password_hash=hash_password(password),
        is_active=True,
        created_at=utcnow(),
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate_user(email: str, password: str) -> User | None:
    """Returns the active consumer on success, None otherwise."""
    user = db.session.query(User).filter_by(email=(email or "").strip().lower()).first()
    if not user or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


# =============================================================================
# MERCHANTS AND STAFF
# =============================================================================

def create_merchant(
    business_name: str,
    email: str,
    return_policy_days: int = 30,
    warranty_months: int = 12,
) -> Merchant:
    if not business_name or not business_name.strip():
        raise AccountError("business_name is required")
    merchant = Merchant(
        business_name=business_name.strip(),
        email=(email or "").strip().lower(),
        is_active=True,
        return_policy_days=return_policy_days,
        warranty_months=warranty_months,
        created_at=utcnow(),
    )
    db.session.add(merchant)
    db.session.commit()
    return merchant


def create_merchant_user(
    merchant_id: int,
    email: str,
    password: str,
    full_name: str,
    role: str = "staff",
) -> MerchantUser:
    if role not in MERCHANT_USER_ROLES:
        raise AccountError(f"Invalid role '{role}'. Must be one of: {', '.join(MERCHANT_USER_ROLES)}")

    merchant = db.session.get(Merchant, merchant_id)
    if not merchant:
        raise AccountError(f"Merchant {merchant_id} not found")

    email = (email or "").strip().lower()
    existing = db.session.query(MerchantUser).filter_by(merchant_id=merchant_id, email=email).first()
    if existing:
        raise AccountError(f"Staff member {email} already exists for merchant {merchant_id}")

    staff = MerchantUser(
        merchant_id=merchant_id,
        email=email,
        full_name=full_name,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
        created_at=utcnow(),
    )
    db.session.add(staff)
    db.session.commit()
    return staff


def authenticate_merchant_user(merchant_id: int, email: str, password: str) -> MerchantUser | None:
    """
    Authenticate a staff member against a specific merchant.

    Returns None on bad credentials. Raises MerchantAuthError when the
    credentials are right but the merchant or staff member is inactive.
    """
    staff = db.session.query(MerchantUser).filter_by(
        merchant_id=merchant_id,
        email=(email or "").strip().lower(),
    ).first()
    if not staff or not verify_password(password, staff.password_hash):
        return None

    require_active_merchant(merchant_id, staff.id)

    staff.last_login_at = utcnow()
    db.session.commit()
    return staff


def require_active_merchant(merchant_id: int | None, merchant_user_id: int | None) -> MerchantUser:
    """
    Ensure the acting merchant and staff member exist, are active, and
    belong together.

    Raises MerchantAuthError otherwise.
    """
    if merchant_id is None or merchant_user_id is None:
        raise MerchantAuthError("An authenticated merchant context is required")

    merchant = db.session.get(Merchant, merchant_id)
    if not merchant or not merchant.is_active:
        raise MerchantAuthError(f"Merchant {merchant_id} is not active")

    staff = db.session.get(MerchantUser, merchant_user_id)
    if not staff or staff.merchant_id != merchant_id:
        raise MerchantAuthError(f"Staff member {merchant_user_id} does not belong to merchant {merchant_id}")
    if not staff.is_active:
        raise MerchantAuthError(f"Staff member {merchant_user_id} is not active")

    return staff
