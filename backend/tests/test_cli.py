"""
CLI tests: bootstrap and review commands run against the test database.
"""

import pytest
from slipsafe.models import Merchant, MerchantUser, Purchase, User
from slipsafe.services import fraud_service


@pytest.fixture(scope='function')
def runner(app):
    return app.test_cli_runner()


class TestBootstrapCommands:

    def test_create_merchant_and_staff(self, runner, db_session):
        result = runner.invoke(args=["merchants", "create", "--name", "Gamma Goods", "--email", "ops@gamma.test"])
        assert result.exit_code == 0, result.output
        merchant = db_session.query(Merchant).filter_by(business_name="Gamma Goods").one()

        result = runner.invoke(args=[
            "merchants", "add-user", "--merchant-id", str(merchant.id), "--email", "Boss@Gamma.test",
            "--name", "Boss", "--role", "owner", "--password", "Password123!",
        ])
        assert result.exit_code == 0, result.output
        staff = db_session.query(MerchantUser).filter_by(merchant_id=merchant.id).one()
        assert staff.email == "boss@gamma.test"
        assert staff.can_review is True

    def test_weak_password_rejected(self, runner, db_session):
        result = runner.invoke(args=["users", "create", "--email", "weak@example.com", "--password", "short"])
        assert result.exit_code != 0
        assert db_session.query(User).count() == 0

    def test_deactivate_merchant(self, runner, db_session, merchant):
        result = runner.invoke(args=["merchants", "deactivate", "--merchant-id", str(merchant.id)])
        assert result.exit_code == 0
        db_session.refresh(merchant)
        assert merchant.is_active is False

    def test_record_purchase_validates_date(self, runner, db_session, consumer):
        result = runner.invoke(args=[
            "purchases", "record", "--user-id", str(consumer.id), "--merchant", "Acme",
            "--date", "14/03/2026", "--total-cents", "1500",
        ])
        assert result.exit_code != 0
        assert "YYYY-MM-DD" in result.output
        assert db_session.query(Purchase).count() == 0


class TestClaimCommands:

    def test_issue_then_show(self, runner, db_session, purchase, consumer):
        result = runner.invoke(args=[
            "claims", "issue", "--purchase-id", str(purchase.id), "--user-id", str(consumer.id),
        ])
        assert result.exit_code == 0, result.output
        assert result.output.startswith("Issued claim ")
        code = result.output.split()[2]

        shown = runner.invoke(args=["claims", "show", code])
        assert shown.exit_code == 0
        assert "issued" in shown.output
        assert "150.00" in shown.output

    def test_issue_for_non_owner(self, runner, db_session, purchase, other_consumer):
        result = runner.invoke(args=[
            "claims", "issue", "--purchase-id", str(purchase.id), "--user-id", str(other_consumer.id),
        ])
        assert result.exit_code != 0

    def test_show_unknown_claim(self, runner, db_session):
        result = runner.invoke(args=["claims", "show", "0000000000000000"])
        assert result.exit_code != 0


class TestFraudCommands:

    def test_list_and_resolve(self, runner, db_session, claim, manager):
        event = fraud_service.flag_suspicious_pattern("manual review", claim=claim)

        listed = runner.invoke(args=["fraud", "list", "--open"])
        assert listed.exit_code == 0
        assert f"[{event.id}]" in listed.output
        assert "OPEN" in listed.output

        resolved = runner.invoke(args=["fraud", "resolve", str(event.id), "--by", str(manager.id)])
        assert resolved.exit_code == 0
        assert runner.invoke(args=["fraud", "list", "--open"]).output.strip() == "No fraud events."

    def test_resolve_unknown_event(self, runner, db_session):
        result = runner.invoke(args=["fraud", "resolve", "999"])
        assert result.exit_code != 0
