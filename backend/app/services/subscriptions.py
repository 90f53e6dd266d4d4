"""Subscription persistence, lifecycle transitions and tier derivation.

The cached tier in ``user_settings`` is always recomputed from the absolute
subscription state (status plus period end), never toggled incrementally.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.core.database import Database, session_scope, upsert_insert
from backend.app.core.errors import NotFoundError, ValidationError
from backend.app.core.metrics import EventSink, NullEventSink
from backend.app.db.models import DbSubscription, DbUserSettings
from backend.app.services.credits import TRANSACTION_SUBSCRIPTION_GRANT, CreditsLedger
from backend.app.services.payments import (
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_PAYMENT_FAILED,
    SUBSCRIPTION_PAYMENT_SUCCEEDED,
    SUBSCRIPTION_UPDATED,
    PaymentEvent,
    custom_user_id,
    to_timestamp,
)
from backend.app.services.plans import TIER_FREE, TIER_PRO, TIERS

logger = logging.getLogger(__name__)


def _now() -> int:
    return int(time.time())


STATUS_ACTIVE = "active"
STATUS_TRIALING = "trialing"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELLED = "cancelled"
STATUS_PAUSED = "paused"
STATUS_EXPIRED = "expired"

SUBSCRIPTION_STATUSES = (
    STATUS_ACTIVE,
    STATUS_TRIALING,
    STATUS_PAST_DUE,
    STATUS_CANCELLED,
    STATUS_PAUSED,
    STATUS_EXPIRED,
)
BILLING_CYCLES = ("monthly", "yearly")

PAID_STATUSES = frozenset({STATUS_ACTIVE, STATUS_TRIALING})
GRACE_STATUSES = frozenset({STATUS_CANCELLED, STATUS_PAST_DUE, STATUS_PAUSED})
ENTITLED_STATUSES = PAID_STATUSES | GRACE_STATUSES

INITIAL_GRANT_DESCRIPTION = "Initial Pro subscription credits"
MONTHLY_GRANT_DESCRIPTION = "Monthly subscription credits"


def compute_tier(status: str, current_period_end: int, now: int) -> str:
    if status in PAID_STATUSES:
        return TIER_PRO
    if status in GRACE_STATUSES and current_period_end > now:
        return TIER_PRO
    return TIER_FREE


@dataclass(frozen=True, slots=True)
class Subscription:
    id: str
    user_id: str
    provider: str
    provider_subscription_id: str
    provider_customer_id: str
    status: str
    billing_cycle: str
    current_period_start: int
    current_period_end: int
    cancel_at_period_end: bool
    created_at: int
    updated_at: int


@dataclass(frozen=True, slots=True)
class SubscriptionGrant:
    subscription: Subscription
    credits_added: int
    balance: int


class SubscriptionStore:
    """Persistence for subscriptions and the cached tier."""

    def __init__(self, db: Database, ledger: CreditsLedger | None = None) -> None:
        self.db = db
        self.ledger = ledger or CreditsLedger(db)

    def get_by_user(self, user_id: str, *, session: Session | None = None) -> Subscription | None:
        with session_scope(self.db, session) as s:
            row = s.scalar(select(DbSubscription).where(DbSubscription.user_id == user_id).limit(1))
            return _subscription_from_db(row) if row else None

    def get_by_provider_id(
        self,
        provider_subscription_id: str,
        *,
        session: Session | None = None,
    ) -> Subscription | None:
        with session_scope(self.db, session) as s:
            row = s.scalar(
                select(DbSubscription)
                .where(DbSubscription.provider_subscription_id == provider_subscription_id)
                .limit(1)
            )
            return _subscription_from_db(row) if row else None

    def create_with_grant(
        self,
        *,
        user_id: str,
        provider: str,
        event: PaymentEvent,
        credits_per_month: int,
        tier: str = TIER_PRO,
        session: Session | None = None,
    ) -> SubscriptionGrant:
        """Write the subscription row, its credit grant and the cached tier as one unit.

        A duplicate ``provider_subscription_id`` raises ``IntegrityError`` and
        nothing is committed.
        """
        _validate_status(event.status)
        _validate_billing_cycle(event.billing_cycle)
        if tier not in TIERS:
            raise ValidationError(f"Invalid tier: {tier}")

        now = _now()
        fields = {
            "provider": provider,
            "provider_subscription_id": event.provider_subscription_id,
            "provider_customer_id": event.provider_customer_id,
            "status": event.status,
            "billing_cycle": event.billing_cycle,
            "current_period_start": to_timestamp(event.current_period_start),
            "current_period_end": to_timestamp(event.current_period_end),
            "cancel_at_period_end": bool(event.cancel_at_period_end),
            "updated_at": now,
        }

        with session_scope(self.db, session) as s:
            row = s.scalar(select(DbSubscription).where(DbSubscription.user_id == user_id).limit(1))
            if row is None:
                row = DbSubscription(id=uuid.uuid4().hex, user_id=user_id, created_at=now, **fields)
                s.add(row)
            else:
                # Re-subscribing replaces the user's previous provider subscription
                for key, value in fields.items():
                    setattr(row, key, value)
            s.flush()

            self.ledger.set_subscription_credits(user_id, credits_per_month, session=s)
            credits = self.ledger.add_credits(
                user_id,
                credits_per_month,
                TRANSACTION_SUBSCRIPTION_GRANT,
                INITIAL_GRANT_DESCRIPTION,
                reference_id=event.provider_subscription_id,
                session=s,
            )
            self.set_tier(user_id, tier, session=s)
            subscription = _subscription_from_db(row)

        return SubscriptionGrant(subscription=subscription, credits_added=credits_per_month, balance=credits.balance)

    def update_by_provider_id(
        self,
        provider_subscription_id: str,
        *,
        session: Session | None = None,
        **changes: Any,
    ) -> Subscription:
        if "status" in changes:
            _validate_status(changes["status"])
        if "billing_cycle" in changes:
            _validate_billing_cycle(changes["billing_cycle"])

        with session_scope(self.db, session) as s:
            row = s.scalar(
                select(DbSubscription)
                .where(DbSubscription.provider_subscription_id == provider_subscription_id)
                .limit(1)
            )
            if row is None:
                raise NotFoundError(f"Subscription not found: {provider_subscription_id}")
            for key, value in changes.items():
                setattr(row, key, value)
            row.updated_at = _now()
            s.flush()
            return _subscription_from_db(row)

    def get_cached_tier(self, user_id: str) -> str | None:
        with self.db.session() as session:
            return session.scalar(
                select(DbUserSettings.subscription_tier).where(DbUserSettings.user_id == user_id).limit(1)
            )

    def set_tier(self, user_id: str, tier: str, *, session: Session | None = None) -> None:
        if tier not in TIERS:
            raise ValidationError(f"Invalid tier: {tier}")
        now = _now()
        with session_scope(self.db, session) as s:
            stmt = upsert_insert(s, DbUserSettings).values(user_id=user_id, subscription_tier=tier, updated_at=now)
            stmt = stmt.on_conflict_do_update(
                index_elements=[DbUserSettings.user_id],
                set_={"subscription_tier": stmt.excluded.subscription_tier, "updated_at": stmt.excluded.updated_at},
            )
            s.execute(stmt)

    def has_active_access(self, user_id: str, now: int | None = None) -> bool:
        now = _now() if now is None else now
        with self.db.session() as session:
            found = session.scalar(
                select(DbSubscription.id)
                .where(
                    DbSubscription.user_id == user_id,
                    DbSubscription.status.in_(ENTITLED_STATUSES),
                    DbSubscription.current_period_end > now,
                )
                .limit(1)
            )
            return found is not None

    def list_lapsed(self, now: int) -> list[Subscription]:
        with self.db.session() as session:
            rows = session.scalars(
                select(DbSubscription)
                .where(
                    DbSubscription.status.in_(GRACE_STATUSES),
                    DbSubscription.current_period_end <= now,
                )
                .order_by(DbSubscription.current_period_end)
            )
            return [_subscription_from_db(row) for row in rows]

    def settle_lapsed(self, subscription: Subscription, now: int) -> str | None:
        """Expire a lapsed cancellation and downgrade the cached tier.

        The row is re-read under a lock so a renewal that landed after
        ``list_lapsed`` wins; returns the tier written, or ``None`` when the
        subscription is no longer lapsed.
        """
        with self.db.session() as session:
            row = session.scalar(
                select(DbSubscription).where(DbSubscription.id == subscription.id).with_for_update()
            )
            if row is None or row.status not in GRACE_STATUSES or row.current_period_end > now:
                return None
            if row.status == STATUS_CANCELLED:
                row.status = STATUS_EXPIRED
                row.updated_at = now
                session.flush()
            tier = compute_tier(row.status, row.current_period_end, now)
            self.set_tier(row.user_id, tier, session=session)
        return tier


class SubscriptionStateMachine:
    """Applies normalized subscription events to the stored state."""

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        *,
        credits_per_month: int,
        provider_name: str = "unknown",
        events: EventSink | None = None,
    ) -> None:
        self.subscriptions = subscriptions
        self.credits_per_month = credits_per_month
        self.provider_name = provider_name
        self.events = events or NullEventSink()
        self._handlers: dict[str, Callable[[PaymentEvent, Session | None, int], str]] = {
            SUBSCRIPTION_CREATED: self._created,
            SUBSCRIPTION_UPDATED: self._updated,
            SUBSCRIPTION_CANCELLED: self._cancelled,
            SUBSCRIPTION_PAYMENT_SUCCEEDED: self._payment_succeeded,
            SUBSCRIPTION_PAYMENT_FAILED: self._payment_failed,
        }

    def apply(self, event: PaymentEvent, *, session: Session | None = None, now: int | None = None) -> str:
        """Route one event; returns the outcome label (applied, duplicate, dropped, ignored)."""
        now = _now() if now is None else now
        handler = self._handlers.get(event.type)
        logger.info(
            "Processing subscription event",
            extra={"data": {"type": event.type, "subscription": event.provider_subscription_id}},
        )
        if handler is None:
            logger.info("Unhandled subscription event", extra={"data": {"type": event.type}})
            return "ignored"
        try:
            return handler(event, session, now)
        except NotFoundError:
            logger.warning(
                "Subscription not found; dropping event",
                extra={"data": {"type": event.type, "subscription": event.provider_subscription_id}},
            )
            return "dropped"

    def sweep_lapsed(self, now: int | None = None) -> int:
        """Downgrade every subscription whose grace period has ended."""
        now = _now() if now is None else now
        settled = 0
        for subscription in self.subscriptions.list_lapsed(now):
            tier = self.subscriptions.settle_lapsed(subscription, now)
            if tier is None:
                logger.info(
                    "Subscription changed since the lapse scan; skipping",
                    extra={"data": {"user_id": subscription.user_id}},
                )
                continue
            settled += 1
            logger.info(
                "Lapsed subscription settled",
                extra={"data": {"user_id": subscription.user_id, "status": subscription.status, "tier": tier}},
            )
        return settled

    def _created(self, event: PaymentEvent, session: Session | None, now: int) -> str:
        existing = self.subscriptions.get_by_provider_id(event.provider_subscription_id, session=session)
        if existing is not None:
            logger.info(
                "Subscription already exists; ignoring duplicate created event",
                extra={"data": {"subscription": event.provider_subscription_id}},
            )
            return "duplicate"

        user_id = custom_user_id(event)
        if not user_id:
            logger.error("No userId in webhook custom data")
            raise ValidationError("Missing userId in webhook payload")

        savepoint = session.begin_nested() if session is not None else nullcontext()
        try:
            with savepoint:
                grant = self.subscriptions.create_with_grant(
                    user_id=user_id,
                    provider=self.provider_name,
                    event=event,
                    credits_per_month=self.credits_per_month,
                    tier=TIER_PRO,
                    session=session,
                )
        except IntegrityError:
            # Only a racing insert of the same provider id is a duplicate
            if self.subscriptions.get_by_provider_id(event.provider_subscription_id, session=session) is None:
                raise
            logger.info(
                "Concurrent subscription creation lost the race; treating as duplicate",
                extra={"data": {"subscription": event.provider_subscription_id}},
            )
            return "duplicate"

        logger.info(
            "Subscription created",
            extra={"data": {"user_id": user_id, "credits_added": grant.credits_added, "balance": grant.balance}},
        )
        self.events.capture(
            "subscription_created",
            {"billing_cycle": event.billing_cycle, "credits_added": grant.credits_added},
            user_id=user_id,
        )
        return "applied"

    def _updated(self, event: PaymentEvent, session: Session | None, now: int) -> str:
        subscription = self.subscriptions.update_by_provider_id(
            event.provider_subscription_id,
            session=session,
            status=event.status,
            billing_cycle=event.billing_cycle,
            current_period_start=to_timestamp(event.current_period_start),
            current_period_end=to_timestamp(event.current_period_end),
            cancel_at_period_end=bool(event.cancel_at_period_end),
        )
        tier = compute_tier(subscription.status, subscription.current_period_end, now)
        self.subscriptions.set_tier(subscription.user_id, tier, session=session)
        logger.info(
            "Subscription updated",
            extra={"data": {"user_id": subscription.user_id, "status": subscription.status, "tier": tier}},
        )
        return "applied"

    def _cancelled(self, event: PaymentEvent, session: Session | None, now: int) -> str:
        # Tier stays as is until the lapse sweep sees the period end
        subscription = self.subscriptions.update_by_provider_id(
            event.provider_subscription_id,
            session=session,
            status=STATUS_CANCELLED,
            cancel_at_period_end=True,
        )
        logger.info("Subscription cancelled", extra={"data": {"user_id": subscription.user_id}})
        return "applied"

    def _payment_succeeded(self, event: PaymentEvent, session: Session | None, now: int) -> str:
        subscription = self.subscriptions.update_by_provider_id(
            event.provider_subscription_id,
            session=session,
            status=STATUS_ACTIVE,
            current_period_start=to_timestamp(event.current_period_start),
            current_period_end=to_timestamp(event.current_period_end),
        )
        self.subscriptions.set_tier(subscription.user_id, TIER_PRO, session=session)
        logger.info("Payment succeeded", extra={"data": {"user_id": subscription.user_id}})
        return "applied"

    def _payment_failed(self, event: PaymentEvent, session: Session | None, now: int) -> str:
        subscription = self.subscriptions.update_by_provider_id(
            event.provider_subscription_id,
            session=session,
            status=STATUS_PAST_DUE,
        )
        logger.info("Payment failed", extra={"data": {"user_id": subscription.user_id}})
        return "applied"


def refresh_subscription_credits(
    ledger: CreditsLedger,
    subscriptions: SubscriptionStore,
    now: int | None = None,
) -> int:
    """Grant the monthly allowance to every due, still-entitled subscriber.

    Returns the number of grants written. A subscriber who is no longer entitled
    has the allowance cleared so it stops coming due.
    """
    now = _now() if now is None else now
    granted = 0
    for record in ledger.users_due_for_refresh(now):
        if not subscriptions.has_active_access(record.user_id, now):
            ledger.set_subscription_credits(record.user_id, 0)
            logger.info("Monthly refresh skipped; subscription lapsed", extra={"data": {"user_id": record.user_id}})
            continue
        with ledger.db.session() as session:
            if not ledger.claim_refresh(record.user_id, now, session=session):
                continue
            ledger.add_credits(
                record.user_id,
                record.subscription_credits_per_month,
                TRANSACTION_SUBSCRIPTION_GRANT,
                MONTHLY_GRANT_DESCRIPTION,
                session=session,
            )
        granted += 1
    logger.info("Monthly credit refresh finished", extra={"data": {"granted": granted}})
    return granted


def _validate_status(status: str) -> None:
    if status not in SUBSCRIPTION_STATUSES:
        raise ValidationError(f"Invalid subscription status: {status}")


def _validate_billing_cycle(billing_cycle: str) -> None:
    if billing_cycle not in BILLING_CYCLES:
        raise ValidationError(f"Invalid billing cycle: {billing_cycle}")


def _subscription_from_db(row: DbSubscription) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        provider_subscription_id=row.provider_subscription_id,
        provider_customer_id=row.provider_customer_id,
        status=row.status,
        billing_cycle=row.billing_cycle,
        current_period_start=int(row.current_period_start),
        current_period_end=int(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        created_at=int(row.created_at),
        updated_at=int(row.updated_at),
    )
