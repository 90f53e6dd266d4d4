from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from backend.app.core.errors import ValidationError
from backend.app.db.models import DbCreditTransaction, DbSubscription
from backend.app.services import credits as credits_module
from backend.app.services import subscriptions as subscriptions_module
from backend.app.services.credits import TRANSACTION_SUBSCRIPTION_GRANT
from backend.app.services.payments import (
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_PAYMENT_FAILED,
    SUBSCRIPTION_PAYMENT_SUCCEEDED,
    SUBSCRIPTION_UPDATED,
    PaymentEvent,
)
from backend.app.services.plans import TIER_FREE, TIER_PRO
from backend.app.services.subscriptions import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    STATUS_PAST_DUE,
    SubscriptionStateMachine,
    SubscriptionStore,
    compute_tier,
    refresh_subscription_credits,
)

DAY = 24 * 60 * 60


def _dt(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _event(
    event_type: str,
    provider_subscription_id: str,
    *,
    user_id: str | None = None,
    status: str = STATUS_ACTIVE,
    period_end: int | None = None,
    billing_cycle: str = "monthly",
) -> PaymentEvent:
    now = int(time.time())
    return PaymentEvent(
        type=event_type,
        provider_subscription_id=provider_subscription_id,
        provider_customer_id="ctm_test",
        status=status,
        billing_cycle=billing_cycle,
        current_period_start=_dt(now),
        current_period_end=_dt(period_end if period_end is not None else now + 30 * DAY),
        custom_data={"userId": user_id} if user_id else {},
        event_id=f"evt_{uuid.uuid4().hex}",
    )


@pytest.fixture
def machine(subscriptions: SubscriptionStore) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(subscriptions, credits_per_month=30, provider_name="paddle")


def _subscribe(machine: SubscriptionStateMachine, user_id: str, **kwargs) -> str:
    provider_id = f"sub_{uuid.uuid4().hex}"
    assert machine.apply(_event(SUBSCRIPTION_CREATED, provider_id, user_id=user_id, **kwargs)) == "applied"
    return provider_id


@pytest.mark.parametrize(
    ("status", "offset", "expected"),
    [
        (STATUS_ACTIVE, -10 * DAY, TIER_PRO),
        ("trialing", -10 * DAY, TIER_PRO),
        (STATUS_CANCELLED, 10 * DAY, TIER_PRO),
        (STATUS_CANCELLED, -10 * DAY, TIER_FREE),
        (STATUS_PAST_DUE, 10 * DAY, TIER_PRO),
        (STATUS_PAST_DUE, -10 * DAY, TIER_FREE),
        ("paused", 10 * DAY, TIER_PRO),
        (STATUS_EXPIRED, 10 * DAY, TIER_FREE),
    ],
)
def test_compute_tier(status: str, offset: int, expected: str) -> None:
    now = 1_750_000_000
    assert compute_tier(status, now + offset, now) == expected


def test_create_with_grant_writes_row_credits_and_tier(subscriptions: SubscriptionStore, ledger, user_id: str) -> None:
    event = _event(SUBSCRIPTION_CREATED, f"sub_{uuid.uuid4().hex}", user_id=user_id)

    grant = subscriptions.create_with_grant(user_id=user_id, provider="paddle", event=event, credits_per_month=30)

    assert grant.credits_added == 30
    assert grant.balance == 30
    assert grant.subscription.status == STATUS_ACTIVE
    assert subscriptions.get_by_user(user_id) == grant.subscription
    assert subscriptions.get_cached_tier(user_id) == TIER_PRO

    record = ledger.get(user_id)
    assert record.subscription_credits_per_month == 30
    assert record.next_refresh_at is not None
    [tx] = ledger.recent_transactions(user_id)
    assert tx.type == TRANSACTION_SUBSCRIPTION_GRANT
    assert tx.reference_id == event.provider_subscription_id


def test_create_with_grant_duplicate_provider_id_commits_nothing(
    db,
    subscriptions: SubscriptionStore,
    ledger,
    seed_user,
) -> None:
    first_user, second_user = seed_user(), seed_user()
    event = _event(SUBSCRIPTION_CREATED, f"sub_{uuid.uuid4().hex}", user_id=first_user)
    subscriptions.create_with_grant(user_id=first_user, provider="paddle", event=event, credits_per_month=30)

    with pytest.raises(IntegrityError):
        subscriptions.create_with_grant(user_id=second_user, provider="paddle", event=event, credits_per_month=30)

    assert subscriptions.get_by_user(second_user) is None
    assert subscriptions.get_cached_tier(second_user) is None
    assert ledger.get(second_user) is None


def test_create_with_grant_rolls_back_row_when_grant_fails(
    monkeypatch,
    db,
    subscriptions: SubscriptionStore,
    user_id: str,
) -> None:
    def broken_grant(*args, **kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(subscriptions.ledger, "add_credits", broken_grant)
    event = _event(SUBSCRIPTION_CREATED, f"sub_{uuid.uuid4().hex}", user_id=user_id)

    with pytest.raises(RuntimeError):
        subscriptions.create_with_grant(user_id=user_id, provider="paddle", event=event, credits_per_month=30)

    with db.session() as session:
        count = session.scalar(select(func.count()).select_from(DbSubscription).where(DbSubscription.user_id == user_id))
    assert count == 0
    assert subscriptions.get_cached_tier(user_id) is None


def test_create_with_grant_validates_status(subscriptions: SubscriptionStore, user_id: str) -> None:
    event = _event(SUBSCRIPTION_CREATED, f"sub_{uuid.uuid4().hex}", user_id=user_id, status="bogus")
    with pytest.raises(ValidationError):
        subscriptions.create_with_grant(user_id=user_id, provider="paddle", event=event, credits_per_month=30)


def test_created_event_is_idempotent(machine: SubscriptionStateMachine, db, ledger, user_id: str) -> None:
    provider_id = _subscribe(machine, user_id)

    again = _event(SUBSCRIPTION_CREATED, provider_id, user_id=user_id)
    assert machine.apply(again) == "duplicate"

    assert ledger.get_balance(user_id) == 30
    with db.session() as session:
        grants = session.scalar(
            select(func.count())
            .select_from(DbCreditTransaction)
            .where(DbCreditTransaction.user_id == user_id, DbCreditTransaction.type == TRANSACTION_SUBSCRIPTION_GRANT)
        )
    assert grants == 1


def test_created_without_user_id_is_rejected(machine: SubscriptionStateMachine) -> None:
    with pytest.raises(ValidationError):
        machine.apply(_event(SUBSCRIPTION_CREATED, f"sub_{uuid.uuid4().hex}"))


def test_updated_recomputes_tier_from_status(
    machine: SubscriptionStateMachine,
    subscriptions: SubscriptionStore,
    user_id: str,
) -> None:
    provider_id = _subscribe(machine, user_id)

    event = _event(SUBSCRIPTION_UPDATED, provider_id, status=STATUS_PAST_DUE, billing_cycle="yearly")
    assert machine.apply(event) == "applied"
    updated = subscriptions.get_by_user(user_id)
    assert updated.status == STATUS_PAST_DUE
    assert updated.billing_cycle == "yearly"
    assert subscriptions.get_cached_tier(user_id) == TIER_PRO

    machine.apply(_event(SUBSCRIPTION_UPDATED, provider_id, status=STATUS_EXPIRED))
    assert subscriptions.get_cached_tier(user_id) == TIER_FREE


def test_cancelled_keeps_access_until_period_end(
    machine: SubscriptionStateMachine,
    subscriptions: SubscriptionStore,
    user_id: str,
) -> None:
    provider_id = _subscribe(machine, user_id)

    assert machine.apply(_event(SUBSCRIPTION_CANCELLED, provider_id, status=STATUS_CANCELLED)) == "applied"

    subscription = subscriptions.get_by_user(user_id)
    assert subscription.status == STATUS_CANCELLED
    assert subscription.cancel_at_period_end is True
    assert subscriptions.get_cached_tier(user_id) == TIER_PRO
    assert subscriptions.has_active_access(user_id) is True


def test_payment_failed_then_succeeded(
    machine: SubscriptionStateMachine,
    subscriptions: SubscriptionStore,
    user_id: str,
) -> None:
    provider_id = _subscribe(machine, user_id)

    machine.apply(_event(SUBSCRIPTION_PAYMENT_FAILED, provider_id, status=STATUS_PAST_DUE))
    assert subscriptions.get_by_user(user_id).status == STATUS_PAST_DUE

    new_end = int(time.time()) + 60 * DAY
    machine.apply(_event(SUBSCRIPTION_PAYMENT_SUCCEEDED, provider_id, period_end=new_end))
    renewed = subscriptions.get_by_user(user_id)
    assert renewed.status == STATUS_ACTIVE
    assert renewed.current_period_end == new_end
    assert subscriptions.get_cached_tier(user_id) == TIER_PRO


def test_events_for_unknown_subscription_are_dropped(machine: SubscriptionStateMachine) -> None:
    missing = f"sub_{uuid.uuid4().hex}"
    for event_type in (
        SUBSCRIPTION_UPDATED,
        SUBSCRIPTION_CANCELLED,
        SUBSCRIPTION_PAYMENT_SUCCEEDED,
        SUBSCRIPTION_PAYMENT_FAILED,
    ):
        assert machine.apply(_event(event_type, missing)) == "dropped"


def test_unhandled_event_type_is_ignored(machine: SubscriptionStateMachine) -> None:
    assert machine.apply(_event("subscription.paused", f"sub_{uuid.uuid4().hex}")) == "ignored"


def test_resubscribe_replaces_previous_subscription(
    machine: SubscriptionStateMachine,
    subscriptions: SubscriptionStore,
    ledger,
    user_id: str,
) -> None:
    first = _subscribe(machine, user_id)
    second = _subscribe(machine, user_id)

    assert subscriptions.get_by_provider_id(first) is None
    assert subscriptions.get_by_user(user_id).provider_subscription_id == second
    assert ledger.get_balance(user_id) == 60


def test_sweep_lapsed_expires_cancelled_and_downgrades(
    machine: SubscriptionStateMachine,
    subscriptions: SubscriptionStore,
    seed_user,
) -> None:
    cancelled_user, past_due_user = seed_user(), seed_user()
    period_end = int(time.time()) + 5 * DAY
    cancelled_id = _subscribe(machine, cancelled_user, period_end=period_end)
    past_due_id = _subscribe(machine, past_due_user, period_end=period_end)
    machine.apply(_event(SUBSCRIPTION_CANCELLED, cancelled_id, status=STATUS_CANCELLED, period_end=period_end))
    machine.apply(_event(SUBSCRIPTION_PAYMENT_FAILED, past_due_id, status=STATUS_PAST_DUE, period_end=period_end))

    # Still inside the paid period
    machine.sweep_lapsed(now=period_end - 1)
    assert subscriptions.get_cached_tier(cancelled_user) == TIER_PRO

    settled = machine.sweep_lapsed(now=period_end + 1)

    assert settled >= 2
    assert subscriptions.get_by_user(cancelled_user).status == STATUS_EXPIRED
    assert subscriptions.get_cached_tier(cancelled_user) == TIER_FREE
    assert subscriptions.get_by_user(past_due_user).status == STATUS_PAST_DUE
    assert subscriptions.get_cached_tier(past_due_user) == TIER_FREE
    assert subscriptions.has_active_access(cancelled_user, period_end + 1) is False


@pytest.mark.parametrize(
    ("lapse_event", "lapse_status"),
    [(SUBSCRIPTION_CANCELLED, STATUS_CANCELLED), (SUBSCRIPTION_PAYMENT_FAILED, STATUS_PAST_DUE)],
)
def test_settle_lapsed_skips_subscription_renewed_after_scan(
    machine: SubscriptionStateMachine,
    subscriptions: SubscriptionStore,
    user_id: str,
    lapse_event: str,
    lapse_status: str,
) -> None:
    period_end = int(time.time()) + 5 * DAY
    provider_id = _subscribe(machine, user_id, period_end=period_end)
    machine.apply(_event(lapse_event, provider_id, status=lapse_status, period_end=period_end))
    now = period_end + 1
    [stale] = [sub for sub in subscriptions.list_lapsed(now) if sub.user_id == user_id]

    renewed_end = now + 30 * DAY
    machine.apply(_event(SUBSCRIPTION_PAYMENT_SUCCEEDED, provider_id, period_end=renewed_end), now=now)

    assert subscriptions.settle_lapsed(stale, now) is None
    live = subscriptions.get_by_user(user_id)
    assert live.status == STATUS_ACTIVE
    assert live.current_period_end == renewed_end
    assert subscriptions.get_cached_tier(user_id) == TIER_PRO


def test_settle_lapsed_uses_live_row(
    machine: SubscriptionStateMachine,
    subscriptions: SubscriptionStore,
    user_id: str,
) -> None:
    period_end = int(time.time()) + 5 * DAY
    provider_id = _subscribe(machine, user_id, period_end=period_end)
    machine.apply(_event(SUBSCRIPTION_PAYMENT_FAILED, provider_id, status=STATUS_PAST_DUE, period_end=period_end))
    [stale] = [sub for sub in subscriptions.list_lapsed(period_end + 1) if sub.user_id == user_id]

    assert subscriptions.settle_lapsed(stale, period_end + 1) == TIER_FREE
    assert subscriptions.get_by_user(user_id).status == STATUS_PAST_DUE
    assert subscriptions.get_cached_tier(user_id) == TIER_FREE


def test_monthly_refresh_grants_once_per_period(
    monkeypatch,
    machine: SubscriptionStateMachine,
    ledger,
    user_id: str,
) -> None:
    _subscribe(machine, user_id, period_end=int(time.time()) + 90 * DAY)
    later = int(time.time()) + 40 * DAY
    monkeypatch.setattr(credits_module, "_now", lambda: later)
    monkeypatch.setattr(subscriptions_module, "_now", lambda: later)

    refresh_subscription_credits(ledger, machine.subscriptions, now=later)
    refresh_subscription_credits(ledger, machine.subscriptions, now=later)

    record = ledger.get(user_id)
    assert record.balance == 60
    assert record.last_refresh_at == later
    assert record.next_refresh_at > later
    descriptions = [tx.description for tx in ledger.recent_transactions(user_id)]
    assert descriptions == ["Monthly subscription credits", "Initial Pro subscription credits"]


def test_claim_refresh_only_claims_due_rows(db, ledger, machine: SubscriptionStateMachine, user_id: str) -> None:
    _subscribe(machine, user_id, period_end=int(time.time()) + 90 * DAY)
    due_at = ledger.get(user_id).next_refresh_at

    with db.session() as session:
        assert ledger.claim_refresh(user_id, due_at - 1, session=session) is False
        assert ledger.claim_refresh(user_id, due_at, session=session) is True


def test_monthly_refresh_clears_allowance_when_lapsed(
    machine: SubscriptionStateMachine,
    ledger,
    user_id: str,
) -> None:
    _subscribe(machine, user_id, period_end=int(time.time()) + 10 * DAY)
    later = int(time.time()) + 40 * DAY

    refresh_subscription_credits(ledger, machine.subscriptions, now=later)

    record = ledger.get(user_id)
    assert record.balance == 30
    assert record.subscription_credits_per_month == 0
    assert all(record.user_id != due.user_id for due in ledger.users_due_for_refresh(later))
