"""
Pytest fixtures for keyledger backend tests.

Provides an in-memory database, a per-test table wipe, a test client and
factories for accounts, keys and referral codes.
"""

import pytest

from keyledger import create_app
from keyledger.config import Config
from keyledger.extensions import db
from keyledger.services import key_service, ledger_service, referral_service
from keyledger.services.pricing import MILLIS_PER_HOUR, PricingCatalog, PricingTier


ADMIN_KEY = "test-admin-key"


class LedgerTestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    ADMIN_API_KEY = ADMIN_KEY
    LEDGER_RETRY_BACKOFF = 0.01
    DEFAULT_REQUEST_TIMEOUT = None
    REDEEM_ONCE_PER_ACCOUNT = True


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(LedgerTestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def admin_headers():
    return {'X-Admin-Key': ADMIN_KEY}


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()
        db.session.remove()


@pytest.fixture(scope='function')
def catalog():
    """Two-tier catalog independent of the configured pricing."""
    return PricingCatalog([
        PricingTier(tier_id="short", price=10, duration_millis=MILLIS_PER_HOUR, label="1 Hour"),
        PricingTier(tier_id="day", price=50, duration_millis=24 * MILLIS_PER_HOUR, label="1 Day"),
    ])


@pytest.fixture(scope='function')
def make_account(db_session):
    counter = {"n": 0}

    def _make(balance=0, username=None):
        counter["n"] += 1
        return ledger_service.create_account(username or f"user{counter['n']}", balance)

    return _make


@pytest.fixture(scope='function')
def make_key(db_session, catalog):
    def _make(account, tier_id="short", device_limit=1, now=None):
        return key_service.issue_key(
            account.id, tier_id, device_limit, catalog=catalog, now=now,
        )

    return _make


@pytest.fixture(scope='function')
def make_code(db_session):
    def _make(amount=20, usage_limit=1, expires_at=None):
        return referral_service.create_referral_code(
            amount, usage_limit, expires_at, created_by="tests",
        )

    return _make
