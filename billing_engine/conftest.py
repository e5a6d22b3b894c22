# billing_engine/conftest.py
from datetime import datetime, timezone

import pytest
from sqlalchemy import insert

from billing_engine.core.config import settings
from billing_engine.core import database
from billing_engine.features.entitlements import evaluator
from billing_engine.features.entitlements import store as store_module
from billing_engine.tests.stripe_payloads import WEBHOOK_SECRET


ADMIN_KEY = "test-admin-key"


@pytest.fixture(scope="function", autouse=True)
def db(tmp_path, monkeypatch):
    """
    Fresh file-backed SQLite database per test.

    File-backed (not :memory:) so worker threads see the same data.
    """
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    url = f"sqlite:///{tmp_path / 'billing.db'}"
    database.init_engine(url)
    database.create_all_tables()
    monkeypatch.setattr(store_module, "_default_store", None)
    yield url
    evaluator.drain_write_backs(timeout=5)
    database.drop_all_tables()
    database.dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def billing_settings(monkeypatch):
    """Deterministic billing configuration for every test."""
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(settings, "STRIPE_PRICE_CURATOR_MONTHLY", "price_curator_monthly")
    monkeypatch.setattr(settings, "STRIPE_PRICE_CURATOR_ANNUAL", "price_curator_annual")
    monkeypatch.setattr(settings, "STRIPE_PRICE_ENTHUSIAST_MONTHLY", "price_enthusiast_monthly")
    monkeypatch.setattr(settings, "STRIPE_PRICE_ENTHUSIAST_ANNUAL", None)
    monkeypatch.setattr(settings, "STRICT_PRICE_MAPPING", False)
    monkeypatch.setattr(settings, "TRIAL_DAYS", 7)
    monkeypatch.setattr(settings, "ADMIN_OVERRIDE_PERIOD_MONTHS", 12)
    monkeypatch.setattr(settings, "ADMIN_KEY", ADMIN_KEY)
    monkeypatch.delenv("ADMIN_API_KEY", raising=False)
    return settings


@pytest.fixture
def now():
    return datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return store_module.EntitlementStore()


@pytest.fixture
def seed_users():
    """Users known to the identity layer."""
    user_ids = ["user_alice", "user_bob", "user_carol"]
    with database.get_db_session() as session:
        for user_id in user_ids:
            session.execute(insert(database.users).values(user_id=user_id, display_name=user_id))
    return user_ids
