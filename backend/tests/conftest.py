import json
import os
import secrets
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event

# Set trusted hosts BEFORE any app import
os.environ.setdefault("MARGIN_TRUSTED_HOSTS", "localhost,testserver")
os.environ.setdefault("APP_ENV", "dev")

# Throwaway SQLite file unless a PostgreSQL URL is supplied
_TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="margin-billing-tests-"))
os.environ.setdefault("MARGIN_DATABASE_URL", f"sqlite:///{_TEST_DB_DIR / 'billing_test.db'}")

# Billing events stay off unless a test turns them on
os.environ.setdefault("MARGIN_EVENTS_ENABLED", "0")

from backend.app.core.auth import SessionStore, UserStore  # noqa: E402
from backend.app.core.database import Database  # noqa: E402
from backend.app.db.models import DbUser  # noqa: E402
from backend.app.services.credits import CreditsLedger  # noqa: E402
from backend.app.services.payments import (  # noqa: E402
    ONE_TIME_COMPLETED,
    NormalizedEvent,
    OneTimePaymentEvent,
    PaymentEvent,
    PaymentProvider,
    register_payment_provider,
    unregister_payment_provider,
)
from backend.app.services.subscriptions import SubscriptionStore  # noqa: E402

VALID_SIGNATURE = "ts=1;h1=valid"


def _parse_ts(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.fromisoformat(value)


class FakePaymentProvider(PaymentProvider):
    """Accepts JSON bodies shaped like normalized events when the signature matches."""

    name = "paddle"

    def __init__(self) -> None:
        self.calls: list[tuple[bytes, str]] = []

    def parse_webhook(self, payload: bytes, signature: str) -> NormalizedEvent | None:
        self.calls.append((payload, signature))
        if signature != VALID_SIGNATURE:
            return None
        data = json.loads(payload)
        if data["type"] == ONE_TIME_COMPLETED:
            return OneTimePaymentEvent(
                event_id=data.get("event_id"),
                occurred_at=_parse_ts(data.get("occurred_at")),
                provider_transaction_id=data["provider_transaction_id"],
                provider_customer_id=data.get("provider_customer_id", "ctm_1"),
                product_id=data.get("product_id"),
                custom_data=data.get("custom_data", {}),
            )
        return PaymentEvent(
            event_id=data.get("event_id"),
            type=data["type"],
            occurred_at=_parse_ts(data.get("occurred_at")),
            provider_subscription_id=data["provider_subscription_id"],
            provider_customer_id=data.get("provider_customer_id", "ctm_1"),
            status=data.get("status", "active"),
            billing_cycle=data.get("billing_cycle", "monthly"),
            current_period_start=_parse_ts(data["current_period_start"]),
            current_period_end=_parse_ts(data["current_period_end"]),
            cancel_at_period_end=data.get("cancel_at_period_end", False),
            custom_data=data.get("custom_data", {}),
        )


@pytest.fixture(scope="session")
def db() -> Database:
    database = Database()
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def fk_db(tmp_path: Path) -> Database:
    """Private SQLite database with foreign keys enforced, as PostgreSQL does."""
    database = Database(f"sqlite:///{tmp_path / 'billing_fk.db'}")

    @event.listens_for(database.engine, "connect")
    def _enforce_foreign_keys(dbapi_connection, _record) -> None:
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def seed_user(db: Database) -> Callable[..., str]:
    def _seed(user_id: str | None = None) -> str:
        resolved = user_id or uuid.uuid4().hex
        with db.session() as session:
            session.add(
                DbUser(
                    id=resolved,
                    email=f"{resolved}@example.com",
                    name="Test",
                    created_at=int(datetime.now(timezone.utc).timestamp()),
                )
            )
        return resolved

    return _seed


@pytest.fixture
def user_id(seed_user: Callable[..., str]) -> str:
    return seed_user()


@pytest.fixture
def ledger(db: Database) -> CreditsLedger:
    return CreditsLedger(db)


@pytest.fixture
def subscriptions(db: Database, ledger: CreditsLedger) -> SubscriptionStore:
    return SubscriptionStore(db, ledger)


@pytest.fixture
def fake_provider() -> FakePaymentProvider:
    provider = FakePaymentProvider()
    register_payment_provider("paddle", lambda: provider)
    yield provider
    unregister_payment_provider("paddle")


@pytest.fixture
def client(monkeypatch, db: Database, fake_provider: FakePaymentProvider) -> TestClient:
    monkeypatch.setenv("APP_ENV", "dev")
    monkeypatch.setenv("MARGIN_TRUSTED_HOSTS", "*")  # Allow test client requests

    from backend.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_user(db: Database):
    email = f"test_{secrets.token_hex(4)}@example.com"
    return UserStore(db).create_user(email, "Test User")


@pytest.fixture
def user_auth_headers(db: Database, auth_user) -> dict[str, str]:
    token = SessionStore(db).issue_session(auth_user, user_agent="pytest")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def webhook_headers() -> dict[str, str]:
    return {"Paddle-Signature": VALID_SIGNATURE, "Content-Type": "application/json"}
