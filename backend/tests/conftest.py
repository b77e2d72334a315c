import os

# Ensure JWT_SECRET exists before importing credit_ledger.main (it calls require_jwt_secret() at import time).
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")
# Keep the module-level engine off the developer's local database file.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from contextlib import contextmanager

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from credit_ledger.core.base import Base
from credit_ledger.core import config as app_config

# Import models so they register with SQLAlchemy metadata.
from credit_ledger.models.account import Account
from credit_ledger.models.transaction import CreditTransaction  # noqa: F401

from credit_ledger.core.database import get_db
from credit_ledger.dependencies.auth import get_current_account
from credit_ledger.services.balances import BalanceStore
from credit_ledger.services.tiers import Tier

INTERNAL_TOKEN = "test_internal_token"


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(db_engine):
    # The in-memory DB persists across tests with StaticPool; reset schema per test.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """
    Tests sometimes tweak global settings (app_config.settings.*). Because that object is
    process-global, restore values after each test to avoid cross-test coupling.
    """
    keys = [
        "ENV",
        "INTERNAL_API_TOKEN",
        "LEDGER_MAX_RETRIES",
        "HISTORY_MAX_PAGE_SIZE",
        "USAGE_MAX_DAYS",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)


@pytest.fixture()
def app(db_session):
    app_config.settings.JWT_SECRET = app_config.settings.JWT_SECRET or "test_jwt_secret"
    app_config.settings.INTERNAL_API_TOKEN = INTERNAL_TOKEN

    import credit_ledger.main as main

    fastapi_app = main.app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def accounts(db_session):
    """
    One active account per paid/free tier plus an admin, each with its tier's starting grant.
    """
    store = BalanceStore(db_session)
    provisioned = {
        tier: store.provision_account(f"{tier.value}@example.com", tier)
        for tier in (Tier.FREE, Tier.MAKER, Tier.PRO, Tier.AGENCY)
    }
    provisioned["admin"] = store.provision_account("admin@example.com", Tier.PRO, is_admin=True)
    return provisioned


@pytest.fixture()
def free_account(accounts) -> Account:
    return accounts[Tier.FREE]


@pytest.fixture()
def admin_account(accounts) -> Account:
    return accounts["admin"]


@pytest.fixture()
def client_for(app):
    """
    Context manager to create a client authenticated as an arbitrary account.

    Usage:
        with client_for(account) as c:
            ...
    """

    @contextmanager
    def _client_for(account: Account):
        app.dependency_overrides[get_current_account] = lambda: account
        with TestClient(app) as c:
            yield c
        app.dependency_overrides.pop(get_current_account, None)

    return _client_for


@pytest.fixture()
def client(client_for, free_account):
    """
    Default client authenticated as the free-tier account.
    """
    with client_for(free_account) as c:
        yield c


@pytest.fixture()
def anonymous_client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def internal_client(app):
    """
    Client for service-to-service endpoints (/deduct, /add).
    """
    with TestClient(app, headers={"x-internal-token": INTERNAL_TOKEN}) as c:
        yield c
