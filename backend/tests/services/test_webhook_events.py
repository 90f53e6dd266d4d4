from __future__ import annotations

import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest

from backend.app.core.errors import ValidationError
from backend.app.services.webhook_events import SECONDS_PER_DAY, WebhookDeduplicator


@pytest.fixture
def dedup(db) -> WebhookDeduplicator:
    return WebhookDeduplicator(db)


def _event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


def test_mark_processed_claims_an_event_once(dedup: WebhookDeduplicator) -> None:
    event_id = _event_id()

    assert dedup.is_processed(event_id) is False
    assert dedup.mark_processed(event_id, "subscription.created") is True
    assert dedup.mark_processed(event_id, "subscription.created") is False
    assert dedup.is_processed(event_id) is True


def test_mark_processed_rejects_blank_ids(dedup: WebhookDeduplicator) -> None:
    with pytest.raises(ValidationError):
        dedup.mark_processed("", "subscription.created")
    with pytest.raises(ValidationError):
        dedup.mark_processed("   ", "subscription.created")


def test_concurrent_claims_have_a_single_winner(dedup: WebhookDeduplicator) -> None:
    event_id = _event_id()

    with ThreadPoolExecutor(max_workers=5) as pool:
        results = list(pool.map(lambda _: dedup.mark_processed(event_id, "transaction.completed"), range(5)))

    assert results.count(True) == 1
    assert results.count(False) == 4


def test_claim_is_released_when_the_transaction_rolls_back(db, dedup: WebhookDeduplicator) -> None:
    event_id = _event_id()

    with pytest.raises(RuntimeError):
        with db.session() as session:
            assert dedup.mark_processed(event_id, "subscription.created", session=session) is True
            raise RuntimeError("handler failed")

    assert dedup.is_processed(event_id) is False
    assert dedup.mark_processed(event_id, "subscription.created") is True


def test_prune_removes_only_expired_ids(monkeypatch, dedup: WebhookDeduplicator) -> None:
    from backend.app.services import webhook_events

    base = 1_600_000_000
    old_id, fresh_id = _event_id(), _event_id()

    monkeypatch.setattr(webhook_events, "_now", lambda: base)
    dedup.mark_processed(old_id, "subscription.updated")
    monkeypatch.setattr(webhook_events, "_now", lambda: base + 6 * SECONDS_PER_DAY)
    dedup.mark_processed(fresh_id, "subscription.updated")

    removed = dedup.prune_days(7, now=base + 8 * SECONDS_PER_DAY)

    assert removed >= 1
    assert dedup.is_processed(old_id) is False
    assert dedup.is_processed(fresh_id) is True


def test_prune_requires_positive_retention(dedup: WebhookDeduplicator) -> None:
    with pytest.raises(ValidationError):
        dedup.prune(0)
