import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import StaticPool, create_engine
from sqlalchemy.orm import sessionmaker

import metering.models  # noqa: F401 — register models with Base.metadata
from metering.core.config import settings
from metering.core.database import Base, get_db
from metering.main import app as fastapi_app
from metering.models import Account, CreditPack
from metering.services.credits.balance import ensure_balance_exists, seed_tier_credits

settings.DEBUG = True
settings.CREDIT_GRANT_SCHEDULER_ENABLED = False
settings.LEDGER_STORAGE_RETRY_DELAY_SECONDS = 0
settings.STRIPE_WEBHOOK_SECRET = "whsec_test"

# In-memory SQLite for tests — no PostgreSQL dependency needed
TEST_DATABASE_URL = "sqlite://"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    """Create all tables before each test, drop after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    """Provide a test database session."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory():
    """Session factory for code that opens its own sessions."""
    return TestSessionLocal


@pytest.fixture
def tiers(db):
    """Seed the tier table with the configured monthly credits."""
    seed_tier_credits(db)
    return settings.TIER_MONTHLY_CREDITS


@pytest.fixture
def account(db, tiers):
    """A builder-plan account with an empty balance record."""
    acct = Account(name="Test Account", plan="builder")
    db.add(acct)
    db.commit()
    db.refresh(acct)
    ensure_balance_exists(db, acct.id)
    return acct


@pytest.fixture
def account_id(account) -> uuid.UUID:
    """Convenience fixture returning the test account's UUID."""
    return account.id


@pytest.fixture
def pack(db):
    """An active 50-credit pack."""
    p = CreditPack(
        name="Small",
        credits=50,
        price_cents=2000,
        external_price_id_one_time="price_small_once",
        external_price_id_recurring="price_small_monthly",
        display_order=1,
    )
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


@pytest.fixture
def client(db):
    """TestClient with overridden DB dependency."""

    def _override_get_db():
        try:
            yield db
        finally:
            pass

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    yield TestClient(fastapi_app)
    fastapi_app.dependency_overrides.clear()
