"""
Claim redemption tests.

Verifies:
- Full and partial redemption stamp the claim exactly once
- Refusal and pending transitions
- Invalid amounts are rejected before any write
- A lost compare-and-swap reports ALREADY_REDEEMED, never a double redemption
- Only active merchant staff can mutate claims
"""

import threading
from datetime import timedelta

import pytest
from slipsafe import create_app
from slipsafe.extensions import db
from slipsafe.models import Claim, ClaimVerification, FraudEvent, Merchant, MerchantUser, User
from slipsafe.services import claim_service, purchase_service, verification_service
from slipsafe.services.auth_service import MerchantAuthError, hash_password
from slipsafe.services.signing_service import current_signer
from slipsafe.services.verification_service import (
    AttemptContext,
    InvalidAmountError,
    mark_pending,
    redeem_claim,
    refuse_claim,
    verify_claim,
)
from slipsafe.time_utils import utcnow


def _wrong(pin: str) -> str:
    return f"{(int(pin) + 1) % 1000000:06d}"


def _audit_rows(db_session, action=None):
    query = db_session.query(ClaimVerification)
    if action:
        query = query.filter_by(action=action)
    return query.order_by(ClaimVerification.id).all()


class TestFullRedemption:

    def test_redeem_stamps_claim(self, db_session, claim, till):
        outcome = redeem_claim(claim.claim_code, claim.pin, context=till)

        assert outcome.status == "MATCH"
        assert outcome.state == "redeemed"

        db_session.refresh(claim)
        assert claim.state == "redeemed"
        assert claim.redeemed_amount_cents == 15000
        assert claim.redeemed_by_merchant_id == till.merchant_id
        assert claim.redeemed_by_user_id == till.merchant_user_id
        assert claim.redeemed_at is not None

        rows = _audit_rows(db_session)
        assert len(rows) == 1
        assert rows[0].action == "redeem"
        assert rows[0].result == "approved"
        assert rows[0].refund_amount_cents == 15000

    def test_explicit_full_amount_accepted(self, db_session, claim, till):
        outcome = redeem_claim(claim.claim_code, claim.pin, refund_amount_cents=15000, context=till)
        assert outcome.status == "MATCH"

    def test_second_redemption_is_already_redeemed(self, db_session, claim, till):
        redeem_claim(claim.claim_code, claim.pin, context=till)
        outcome = redeem_claim(claim.claim_code, claim.pin, context=till)

        assert outcome.status == "ALREADY_REDEEMED"
        assert outcome.state == "redeemed"
        assert len(_audit_rows(db_session, "redeem")) == 2

        events = db_session.query(FraudEvent).filter_by(event_type="duplicate_claim_attempt").all()
        assert len(events) == 1

    def test_wrong_pin_does_not_mutate(self, db_session, claim, till):
        outcome = redeem_claim(claim.claim_code, _wrong(claim.pin), context=till)

        assert outcome.status == "NO_MATCH"
        db_session.refresh(claim)
        assert claim.state == "issued"
        assert claim.redeemed_at is None

    def test_expired_claim_is_not_redeemed(self, db_session, claim, till):
        claim.expires_at = utcnow() - timedelta(minutes=1)
        db_session.commit()

        outcome = redeem_claim(claim.claim_code, claim.pin, context=till)

        assert outcome.status == "EXPIRED"
        db_session.refresh(claim)
        assert claim.state == "issued"
        events = db_session.query(FraudEvent).all()
        assert [e.event_type for e in events] == ["expired_claim_use"]
        assert events[0].severity == "medium"

    def test_rate_limited_claim_is_not_redeemed(self, db_session, claim, till):
        for _ in range(5):
            verify_claim(claim.claim_code, _wrong(claim.pin), context=till)

        outcome = redeem_claim(claim.claim_code, claim.pin, context=till)

        assert outcome.status == "RATE_LIMITED"
        db_session.refresh(claim)
        assert claim.state == "issued"

    def test_redeem_with_scanned_credential(self, db_session, claim, credential, signer, till):
        outcome = redeem_claim(None, claim.pin, token=credential, signer=signer, context=till)

        assert outcome.status == "MATCH"
        assert outcome.comparison["match"] is True

    def test_redeem_with_forged_credential(self, db_session, claim, credential, signer, till):
        outcome = redeem_claim(None, claim.pin, token=credential + "x", signer=signer, context=till)

        assert outcome.status == "INVALID"
        db_session.refresh(claim)
        assert claim.state == "issued"


class TestPartialRedemption:

    def test_partial_redemption(self, db_session, claim, till):
        outcome = redeem_claim(
            claim.claim_code, claim.pin, is_partial=True, refund_amount_cents=7500,
            notes="Opened box", context=till,
        )

        assert outcome.status == "MATCH"
        assert outcome.state == "partial"
        db_session.refresh(claim)
        assert claim.state == "partial"
        assert claim.redeemed_amount_cents == 7500

        row = _audit_rows(db_session)[0]
        assert row.result == "partial_approved"
        assert row.refund_amount_cents == 7500
        assert row.notes == "Opened box"

    def test_partial_claim_is_terminal(self, db_session, claim, till):
        redeem_claim(claim.claim_code, claim.pin, is_partial=True, refund_amount_cents=100, context=till)
        outcome = redeem_claim(claim.claim_code, claim.pin, is_partial=True, refund_amount_cents=100, context=till)

        assert outcome.status == "ALREADY_REDEEMED"
        assert outcome.state == "partial"

    @pytest.mark.parametrize(
        "is_partial,amount",
        [
            (True, 15000),   # equal to original
            (True, 20000),   # above original
            (True, None),    # missing
            (True, 0),
            (True, -100),
            (False, 9000),   # full redemption must refund the original
            (False, "75.00"),
            (True, 75.5),
        ],
    )
    def test_invalid_amount_rejected_before_any_write(self, db_session, claim, till, is_partial, amount):
        with pytest.raises(InvalidAmountError):
            redeem_claim(
                claim.claim_code, claim.pin, is_partial=is_partial, refund_amount_cents=amount, context=till
            )

        assert _audit_rows(db_session) == []
        assert db_session.query(FraudEvent).count() == 0
        db_session.refresh(claim)
        assert claim.state == "issued"

    @pytest.mark.parametrize("is_partial,amount", [(True, 10**9), (False, 9000)])
    def test_wrong_pin_is_checked_before_claim_amount(self, db_session, claim, till, is_partial, amount):
        outcome = redeem_claim(
            claim.claim_code, _wrong(claim.pin), is_partial=is_partial, refund_amount_cents=amount, context=till
        )

        assert outcome.status == "NO_MATCH"
        assert "original amount" not in (outcome.message or "")
        rows = _audit_rows(db_session)
        assert len(rows) == 1
        assert rows[0].pin_correct is False
        assert rows[0].refund_amount_cents == amount
        db_session.refresh(claim)
        assert claim.state == "issued"

    def test_oversized_amount_attempts_count_toward_throttle(self, db_session, claim, till):
        for _ in range(5):
            outcome = redeem_claim(
                claim.claim_code, _wrong(claim.pin), is_partial=True, refund_amount_cents=10**9, context=till
            )
            assert outcome.status == "NO_MATCH"

        outcome = redeem_claim(claim.claim_code, claim.pin, context=till)

        assert outcome.status == "RATE_LIMITED"
        db_session.refresh(claim)
        assert claim.state == "issued"

    def test_redeem_with_forged_credential_and_typed_code(self, db_session, claim, credential, signer, till):
        outcome = redeem_claim(claim.claim_code, claim.pin, token=credential + "x", signer=signer, context=till)

        assert outcome.status == "INVALID"
        row = _audit_rows(db_session)[0]
        assert row.action == "redeem"
        assert row.claim_id == claim.id
        assert [e.event_type for e in db_session.query(FraudEvent).all()] == ["duplicate_claim_attempt"]


class TestRefusal:

    def test_refuse_claim(self, db_session, claim, till):
        outcome = refuse_claim(claim.claim_code, claim.pin, reason="Water damage", context=till)

        assert outcome.status == "MATCH"
        assert outcome.state == "refused"
        db_session.refresh(claim)
        assert claim.state == "refused"
        assert claim.redeemed_amount_cents is None
        assert claim.redeemed_by_merchant_id == till.merchant_id

        row = _audit_rows(db_session)[0]
        assert row.action == "refuse"
        assert row.result == "rejected"
        assert row.notes == "Water damage"

    def test_refused_claim_cannot_be_redeemed(self, db_session, claim, till):
        refuse_claim(claim.claim_code, claim.pin, context=till)
        outcome = redeem_claim(claim.claim_code, claim.pin, context=till)

        assert outcome.status == "ALREADY_REDEEMED"
        assert outcome.state == "refused"

    def test_redeemed_claim_cannot_be_refused(self, db_session, claim, till):
        redeem_claim(claim.claim_code, claim.pin, context=till)
        outcome = refuse_claim(claim.claim_code, claim.pin, context=till)

        assert outcome.status == "ALREADY_REDEEMED"
        db_session.refresh(claim)
        assert claim.state == "redeemed"


class TestPending:

    def test_mark_pending_then_redeem(self, db_session, claim, till):
        outcome = mark_pending(claim.claim_code, claim.pin, context=till)

        assert outcome.status == "MATCH"
        assert outcome.state == "pending"
        db_session.refresh(claim)
        assert claim.state == "pending"

        assert verify_claim(claim.claim_code, claim.pin).state == "pending"
        assert redeem_claim(claim.claim_code, claim.pin, context=till).state == "redeemed"

    def test_mark_pending_twice_is_harmless(self, db_session, claim, till):
        mark_pending(claim.claim_code, claim.pin, context=till)
        outcome = mark_pending(claim.claim_code, claim.pin, context=till)

        assert outcome.status == "MATCH"
        assert outcome.state == "pending"
        assert len(_audit_rows(db_session, "pending")) == 2

    def test_mark_pending_on_terminal_claim(self, db_session, claim, till):
        redeem_claim(claim.claim_code, claim.pin, context=till)
        outcome = mark_pending(claim.claim_code, claim.pin, context=till)

        assert outcome.status == "ALREADY_REDEEMED"
        db_session.refresh(claim)
        assert claim.state == "redeemed"


class TestMerchantAuthority:

    def test_redeem_requires_merchant_context(self, db_session, claim):
        with pytest.raises(MerchantAuthError):
            redeem_claim(claim.claim_code, claim.pin, context=AttemptContext())
        assert _audit_rows(db_session) == []

    def test_inactive_merchant_cannot_redeem(self, db_session, claim, merchant, till):
        merchant.is_active = False
        db_session.commit()

        with pytest.raises(MerchantAuthError):
            redeem_claim(claim.claim_code, claim.pin, context=till)
        db_session.refresh(claim)
        assert claim.state == "issued"

    def test_inactive_staff_cannot_refuse(self, db_session, claim, cashier, till):
        cashier.is_active = False
        db_session.commit()

        with pytest.raises(MerchantAuthError):
            refuse_claim(claim.claim_code, claim.pin, context=till)

    def test_staff_must_belong_to_merchant(self, db_session, claim, cashier, other_merchant):
        context = AttemptContext(merchant_id=other_merchant.id, merchant_user_id=cashier.id)
        with pytest.raises(MerchantAuthError):
            redeem_claim(claim.claim_code, claim.pin, context=context)

    def test_cross_merchant_redemption_is_flagged(self, db_session, claim, other_till):
        outcome = redeem_claim(claim.claim_code, claim.pin, context=other_till)

        assert outcome.status == "MATCH"
        events = db_session.query(FraudEvent).filter_by(event_type="cross_merchant_claim").all()
        assert len(events) == 1
        assert events[0].merchant_id == other_till.merchant_id
        assert [e.id for e in outcome.fraud_events] == [events[0].id]


class TestCompareAndSwap:
    """The state flip is conditional on the claim still being open."""

    def test_lost_race_reports_already_redeemed(self, db_session, claim, till, monkeypatch):
        evaluate = verification_service._evaluate

        def evaluate_then_lose(*args, **kwargs):
            outcome = evaluate(*args, **kwargs)
            # another till wins between our checks and our update
            db.session.query(Claim).filter_by(id=claim.id).update({"state": "redeemed"})
            db.session.commit()
            return outcome

        monkeypatch.setattr(verification_service, "_evaluate", evaluate_then_lose)

        outcome = redeem_claim(claim.claim_code, claim.pin, context=till)

        assert outcome.status == "ALREADY_REDEEMED"
        assert outcome.message.startswith("AlreadyTerminal")
        db_session.refresh(claim)
        assert claim.redeemed_by_merchant_id is None
        assert claim.redeemed_amount_cents is None

        rows = _audit_rows(db_session)
        assert len(rows) == 1
        assert rows[0].status == "ALREADY_REDEEMED"
        assert rows[0].result == "rejected"

    def test_expiry_between_check_and_update(self, db_session, claim, till, monkeypatch):
        evaluate = verification_service._evaluate

        def evaluate_then_expire(*args, **kwargs):
            outcome = evaluate(*args, **kwargs)
            db.session.query(Claim).filter_by(id=claim.id).update(
                {"expires_at": utcnow() - timedelta(seconds=1)}
            )
            db.session.commit()
            return outcome

        monkeypatch.setattr(verification_service, "_evaluate", evaluate_then_expire)

        outcome = redeem_claim(claim.claim_code, claim.pin, context=till)

        assert outcome.status == "EXPIRED"
        db_session.refresh(claim)
        assert claim.state == "issued"


@pytest.fixture
def race_app(tmp_path):
    """A file-backed app so concurrent threads hold real connections."""
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'race-secret',
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'race.sqlite3'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


def test_concurrent_redemptions_exactly_one_wins(race_app):
    password_hash = hash_password("Password123!")

    with race_app.app_context():
        user = User(email="race@example.com", password_hash=password_hash, is_active=True)
        merchant = Merchant(business_name="Race Store", email="ops@race.test", is_active=True)
        db.session.add_all([user, merchant])
        db.session.commit()
        staff = [
            MerchantUser(
                merchant_id=merchant.id, email=f"till{i}@race.test", full_name=f"Till {i}",
                password_hash=password_hash,
                role="staff", is_active=True,
            )
            for i in range(2)
        ]
        db.session.add_all(staff)
        db.session.commit()
        purchase = purchase_service.record_purchase(
            user.id, "Race Store", "2026-05-01", 4200, merchant_id=merchant.id
        )
        claim, _ = claim_service.issue_claim(
            purchase.id, user.id, "return", signer=current_signer(), verifier_url="https://verify.test"
        )
        code, pin, claim_id = claim.claim_code, claim.pin, claim.id
        contexts = [AttemptContext(merchant_id=merchant.id, merchant_user_id=s.id) for s in staff]

    barrier = threading.Barrier(2)
    statuses = []
    errors = []

    def attempt(context):
        try:
            with race_app.app_context():
                barrier.wait()
                statuses.append(redeem_claim(code, pin, context=context).status)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=attempt, args=(context,)) for context in contexts]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sorted(statuses) == ["ALREADY_REDEEMED", "MATCH"]

    with race_app.app_context():
        claim = db.session.get(Claim, claim_id)
        assert claim.state == "redeemed"
        assert claim.redeemed_amount_cents == 4200
        winners = db.session.query(ClaimVerification).filter_by(claim_id=claim_id, result="approved").count()
        assert winners == 1
