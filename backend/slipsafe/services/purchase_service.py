# Overview: Read-mostly facade over the purchase ledger consumed by claim issuance.

"""
Purchase Ledger Facade

WHY: Purchases are owned by the receipt-capture side of the product. The
claim subsystem only reads them; record_purchase exists so the CLI and the
test suite can stand in for the upstream writer.
"""

from __future__ import annotations

import hashlib

from ..extensions import db
from ..models import Purchase, User
from slipsafe.time_utils import is_calendar_date, utcnow


class PurchaseError(Exception):
    """Raised for invalid purchase ledger input."""
    pass


def generate_hash(merchant: str, purchase_date: str, total_cents: int) -> str:
    """SHA-256 fingerprint of "merchant|date|total" (total as 0.00)."""
    total = f"{total_cents // 100}.{total_cents % 100:02d}"
    data = f"{merchant}|{purchase_date}|{total}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def get_purchase(purchase_id: int) -> Purchase | None:
    return db.session.get(Purchase, purchase_id)


def record_purchase(
    user_id: int,
    merchant: str,
    purchase_date: str,
    total_cents: int,
    merchant_id: int | None = None,
) -> Purchase:
    """
    Record a confirmed purchase for a user.

    Raises:
        PurchaseError: If the user is unknown or the fields are malformed
    """
    if db.session.get(User, user_id) is None:
        raise PurchaseError(f"User {user_id} not found")

    merchant = (merchant or "").strip()
    if not merchant:
        raise PurchaseError("Merchant name is required")

    if not is_calendar_date(purchase_date):
        raise PurchaseError("purchase_date must be YYYY-MM-DD")

    if not isinstance(total_cents, int) or isinstance(total_cents, bool) or total_cents <= 0:
        raise PurchaseError("total_cents must be a positive integer")

    purchase = Purchase(
        user_id=user_id,
        merchant=merchant,
        merchant_id=merchant_id,
        purchase_date=purchase_date,
        total_cents=total_cents,
        hash=generate_hash(merchant, purchase_date, total_cents),
        created_at=utcnow(),
    )
    db.session.add(purchase)
    db.session.commit()

    return purchase
