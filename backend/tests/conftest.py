"""
Pytest fixtures for SlipSafe backend tests.

Provides test database setup, principals (consumer, merchants, staff),
a purchase, an issued claim, and authenticated test client headers.
"""

import pytest
from slipsafe import create_app
from slipsafe.extensions import db
from slipsafe.models import Merchant, MerchantUser, User
from slipsafe.services import claim_service, purchase_service, session_service
from slipsafe.services.auth_service import hash_password
from slipsafe.services.signing_service import current_signer
from slipsafe.services.verification_service import AttemptContext
from slipsafe.time_utils import utcnow


PASSWORD = "Password123!"

# bcrypt is deliberately slow; hash once for every fixture account
PASSWORD_HASH = hash_password(PASSWORD)

TEST_CONFIG = {
    'TESTING': True,
    'SECRET_KEY': 'test-secret',
    'CLAIM_SIGNING_KEY': 'test-claim-signing-key',
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'CLAIM_VERIFIER_URL': 'https://verify.test/claim',
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='function')
def signer(app):
    with app.app_context():
        return current_signer()


@pytest.fixture(scope='function')
def consumer(db_session):
    user = User(email="alice@example.com", full_name="Alice", password_hash=PASSWORD_HASH, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def other_consumer(db_session):
    user = User(email="bob@example.com", full_name="Bob", password_hash=PASSWORD_HASH, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def merchant(db_session):
    """Merchant A: where the purchase was made."""
    merchant = Merchant(business_name="Acme Hardware", email="ops@acme.test", is_active=True)
    db_session.add(merchant)
    db_session.commit()
    return merchant


@pytest.fixture(scope='function')
def other_merchant(db_session):
    """Merchant B: unrelated to the purchase."""
    merchant = Merchant(business_name="Beta Outlet", email="ops@beta.test", is_active=True)
    db_session.add(merchant)
    db_session.commit()
    return merchant


def _staff(db_session, merchant, email, role):
    staff = MerchantUser(
        merchant_id=merchant.id,
        email=email,
        full_name=email.split("@")[0].title(),
        password_hash=PASSWORD_HASH,
        role=role,
        is_active=True,
    )
    db_session.add(staff)
    db_session.commit()
    return staff


@pytest.fixture(scope='function')
def cashier(db_session, merchant):
    return _staff(db_session, merchant, "till@acme.test", "staff")


@pytest.fixture(scope='function')
def manager(db_session, merchant):
    return _staff(db_session, merchant, "manager@acme.test", "manager")


@pytest.fixture(scope='function')
def other_cashier(db_session, other_merchant):
    return _staff(db_session, other_merchant, "till@beta.test", "staff")


@pytest.fixture(scope='function')
def purchase(db_session, consumer, merchant):
    """A 150.00 purchase made today at merchant A."""
    return purchase_service.record_purchase(
        consumer.id,
        "Acme Hardware",
        utcnow().date().isoformat(),
        15000,
        merchant_id=merchant.id,
    )


@pytest.fixture(scope='function')
def claim(app, purchase, consumer, signer):
    """An issued return claim for the purchase."""
    claim, _ = claim_service.issue_claim(
        purchase.id, consumer.id, "return", signer=signer, verifier_url=app.config["CLAIM_VERIFIER_URL"]
    )
    return claim


@pytest.fixture(scope='function')
def credential(claim):
    """The signed token embedded in the claim's QR payload."""
    return claim.qr_code_data.split("token=", 1)[1]


@pytest.fixture(scope='function')
def till(cashier):
    """Attempt context for merchant A's cashier."""
    return AttemptContext(merchant_id=cashier.merchant_id, merchant_user_id=cashier.id, ip_address="10.0.0.1")


@pytest.fixture(scope='function')
def other_till(other_cashier):
    return AttemptContext(merchant_id=other_cashier.merchant_id, merchant_user_id=other_cashier.id)


def _headers(**principal) -> dict:
    _, token = session_service.create_session(**principal)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def consumer_headers(consumer):
    return _headers(user_id=consumer.id)


@pytest.fixture(scope='function')
def cashier_headers(cashier):
    return _headers(merchant_user_id=cashier.id)


@pytest.fixture(scope='function')
def manager_headers(manager):
    return _headers(merchant_user_id=manager.id)


@pytest.fixture(scope='function')
def other_cashier_headers(other_cashier):
    return _headers(merchant_user_id=other_cashier.id)


@pytest.fixture(scope='function')
def other_consumer_headers(other_consumer):
    return _headers(user_id=other_consumer.id)


@pytest.fixture(scope='function')
def other_owner_headers(db_session, other_merchant):
    """Owner of merchant B: a reviewer with no relationship to the claim."""
    owner = _staff(db_session, other_merchant, "owner@beta.test", "owner")
    return _headers(merchant_user_id=owner.id)
