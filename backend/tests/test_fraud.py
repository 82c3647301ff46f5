"""
Fraud detection tests.

Verifies:
- Events are derived from the audit trail after each attempt
- One event per incident; open duplicates are not re-raised
- Resolution is idempotent and never touches claim state
- Merchant scoping of the review list
"""

from datetime import timedelta

import pytest
from slipsafe.models import FraudEvent
from slipsafe.services import fraud_service
from slipsafe.services.fraud_service import FraudError, FraudEventNotFoundError
from slipsafe.services.verification_service import redeem_claim, verify_claim
from slipsafe.time_utils import utcnow


def _wrong(pin: str) -> str:
    return f"{(int(pin) + 1) % 1000000:06d}"


def _expire(db_session, claim):
    claim.expires_at = utcnow() - timedelta(minutes=1)
    db_session.commit()


class TestDetection:

    def test_clean_attempts_raise_nothing(self, db_session, claim, till):
        verify_claim(claim.claim_code, claim.pin, context=till)
        redeem_claim(claim.claim_code, claim.pin, context=till)
        assert db_session.query(FraudEvent).count() == 0

    def test_expired_verification_is_not_fraud(self, db_session, claim, till):
        _expire(db_session, claim)
        verify_claim(claim.claim_code, claim.pin, context=till)
        assert db_session.query(FraudEvent).count() == 0

    def test_expired_redemption_raised_once_while_open(self, db_session, claim, till):
        _expire(db_session, claim)
        redeem_claim(claim.claim_code, claim.pin, context=till)
        redeem_claim(claim.claim_code, claim.pin, context=till)

        events = db_session.query(FraudEvent).filter_by(event_type="expired_claim_use").all()
        assert len(events) == 1
        assert events[0].claim_id == claim.id
        assert events[0].purchase_id == claim.purchase_id
        assert events[0].user_id == claim.user_id

    def test_resolved_incident_can_recur(self, db_session, claim, till, manager):
        _expire(db_session, claim)
        redeem_claim(claim.claim_code, claim.pin, context=till)
        first = db_session.query(FraudEvent).one()
        fraud_service.resolve_fraud_event(first.id, resolved_by=manager.id)

        redeem_claim(claim.claim_code, claim.pin, context=till)

        assert db_session.query(FraudEvent).filter_by(event_type="expired_claim_use").count() == 2

    def test_cross_merchant_verification_is_flagged(self, db_session, claim, other_till):
        outcome = verify_claim(claim.claim_code, _wrong(claim.pin), context=other_till)

        assert outcome.status == "NO_MATCH"
        event = db_session.query(FraudEvent).one()
        assert event.event_type == "cross_merchant_claim"
        assert event.merchant_id == other_till.merchant_id

    def test_anonymous_verification_is_not_cross_merchant(self, db_session, claim):
        verify_claim(claim.claim_code, claim.pin)
        assert db_session.query(FraudEvent).count() == 0

    def test_unattributed_purchase_is_never_cross_merchant(self, db_session, claim, purchase, other_till):
        purchase.merchant_id = None
        db_session.commit()

        verify_claim(claim.claim_code, claim.pin, context=other_till)

        assert db_session.query(FraudEvent).count() == 0

    def test_pin_lockout_window_counts_only_recent_failures(self, db_session, claim):
        for _ in range(3):
            verify_claim(claim.claim_code, _wrong(claim.pin))
        verify_claim(claim.claim_code, claim.pin)

        assert fraud_service.count_failed_pin_attempts(claim.id) == 3
        assert fraud_service.count_failed_pin_attempts(claim.id, now=utcnow() + timedelta(minutes=20)) == 0
        assert fraud_service.is_rate_limited(claim.id) is False


class TestManualEvents:

    def test_flag_suspicious_pattern(self, db_session, claim, merchant):
        event = fraud_service.flag_suspicious_pattern(
            "Third warranty claim this week", claim=claim, merchant_id=merchant.id,
            severity="medium", metadata="customer=alice",
        )

        assert event.event_type == "suspicious_pattern"
        assert event.severity == "medium"
        assert event.resolved is False
        assert event.to_dict()["metadata"] == "customer=alice"

    def test_unknown_event_type(self, db_session):
        with pytest.raises(FraudError):
            fraud_service.record_fraud_event("velocity", "too fast")

    def test_unknown_severity(self, db_session):
        with pytest.raises(FraudError):
            fraud_service.flag_suspicious_pattern("odd", severity="critical")

    def test_description_required(self, db_session):
        with pytest.raises(FraudError):
            fraud_service.flag_suspicious_pattern("   ")


class TestResolution:

    def test_resolve_is_idempotent(self, db_session, claim, manager):
        event = fraud_service.flag_suspicious_pattern("look at this", claim=claim)

        first = fraud_service.resolve_fraud_event(event.id, resolved_by=manager.id)
        resolved_at = first.resolved_at
        second = fraud_service.resolve_fraud_event(event.id, resolved_by=None)

        assert first.resolved is True
        assert second.resolved_at == resolved_at
        assert second.resolved_by == manager.id

    def test_resolution_does_not_touch_claim(self, db_session, claim, manager):
        event = fraud_service.flag_suspicious_pattern("look at this", claim=claim)
        fraud_service.resolve_fraud_event(event.id, resolved_by=manager.id)

        db_session.refresh(claim)
        assert claim.state == "issued"

    def test_resolve_unknown_event(self, db_session):
        with pytest.raises(FraudEventNotFoundError):
            fraud_service.resolve_fraud_event(424242, resolved_by=None)


class TestListing:

    def test_merchant_scope(self, db_session, claim, merchant, other_merchant, other_till, consumer):
        # raised by merchant B against merchant A's purchase
        verify_claim(claim.claim_code, claim.pin, context=other_till)
        # unrelated event raised by merchant B without a claim
        fraud_service.flag_suspicious_pattern("till drawer mismatch", merchant_id=other_merchant.id)

        for_a = fraud_service.list_fraud_events(merchant_id=merchant.id)
        for_b = fraud_service.list_fraud_events(merchant_id=other_merchant.id)

        assert [e.event_type for e in for_a] == ["cross_merchant_claim"]
        assert sorted(e.event_type for e in for_b) == ["cross_merchant_claim", "suspicious_pattern"]

    def test_filters(self, db_session, claim, manager):
        open_event = fraud_service.flag_suspicious_pattern("one", claim=claim, severity="high")
        closed = fraud_service.flag_suspicious_pattern("two", claim=claim)
        fraud_service.resolve_fraud_event(closed.id, resolved_by=manager.id)

        assert [e.id for e in fraud_service.list_fraud_events(resolved=False)] == [open_event.id]
        assert [e.id for e in fraud_service.list_fraud_events(severity="high")] == [open_event.id]
        assert len(fraud_service.list_fraud_events(claim_id=claim.id)) == 2
        assert fraud_service.list_fraud_events(event_type="invalid_pin_attempts") == []
        assert fraud_service.list_fraud_events(since=utcnow() + timedelta(minutes=1)) == []

    def test_newest_first(self, db_session):
        first = fraud_service.flag_suspicious_pattern("first")
        second = fraud_service.flag_suspicious_pattern("second")

        assert [e.id for e in fraud_service.list_fraud_events()] == [second.id, first.id]


def test_claim_risk_summary(db_session, claim):
    for _ in range(5):
        verify_claim(claim.claim_code, _wrong(claim.pin))
    verify_claim(claim.claim_code, claim.pin)

    summary = fraud_service.get_claim_risk_summary(claim.id)

    assert summary == {
        "failed_pin_attempts": 5,
        "failure_threshold": 5,
        "window_minutes": 15,
        "rate_limited": True,
        "open_fraud_events": 1,
    }
