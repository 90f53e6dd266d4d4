"""Inbound payment webhook processing: verify, check freshness, dedup, route."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from sqlalchemy.orm import Session

from backend.app.core.database import Database
from backend.app.core.errors import InvalidSignatureError, ValidationError, WebhookProcessingError
from backend.app.core.metrics import EventSink, NullEventSink
from backend.app.services.credits import TRANSACTION_PURCHASE, CreditsLedger
from backend.app.services.payments import (
    ONE_TIME_COMPLETED,
    NormalizedEvent,
    OneTimePaymentEvent,
    PaymentEvent,
    PaymentProvider,
    custom_user_id,
    to_timestamp,
)
from backend.app.services.plans import get_credit_pack
from backend.app.services.subscriptions import SubscriptionStateMachine
from backend.app.services.webhook_events import WebhookDeduplicator

logger = logging.getLogger(__name__)


def _now() -> int:
    return int(time.time())


SIGNATURE_HEADERS = ("paddle-signature", "x-signature", "x-webhook-signature")
DEFAULT_TOLERANCE_SECONDS = 300


def extract_signature(headers: Mapping[str, str]) -> str:
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return ""


def is_timestamp_valid(occurred_at: datetime | None, *, now: float, tolerance_seconds: int) -> bool:
    """Reject only events older than the tolerance; future or missing timestamps pass."""
    if occurred_at is None:
        return True
    return now - to_timestamp(occurred_at) <= tolerance_seconds


@dataclass(frozen=True, slots=True)
class WebhookResult:
    event_id: str | None
    event_type: str
    outcome: str

    @property
    def deduplicated(self) -> bool:
        return self.outcome == "duplicate_event"


class WebhookProcessor:
    """Runs one delivery end to end.

    The dedup claim and every side effect share one transaction: a failure rolls
    the claim back with the writes, so the provider's retry is processed again,
    while a concurrent redelivery blocks on the claim and then sees a duplicate.
    """

    def __init__(
        self,
        db: Database,
        provider: PaymentProvider,
        state_machine: SubscriptionStateMachine,
        ledger: CreditsLedger,
        deduplicator: WebhookDeduplicator,
        *,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        events: EventSink | None = None,
    ) -> None:
        self.db = db
        self.provider = provider
        self.state_machine = state_machine
        self.ledger = ledger
        self.deduplicator = deduplicator
        self.tolerance_seconds = tolerance_seconds
        self.events = events or NullEventSink()

    def handle(self, payload: bytes, signature: str) -> WebhookResult:
        event = self.provider.parse_webhook(payload, signature)
        if event is None:
            logger.warning("Webhook verification failed", extra={"data": {"provider": self.provider.name}})
            raise InvalidSignatureError("Invalid signature")

        if not is_timestamp_valid(event.occurred_at, now=_now(), tolerance_seconds=self.tolerance_seconds):
            logger.warning(
                "Webhook too old",
                extra={"data": {"event_id": event.event_id, "occurred_at": str(event.occurred_at)}},
            )
            raise ValidationError("Webhook timestamp too old", code="STALE_WEBHOOK")

        try:
            with self.db.session() as session:
                if event.event_id and not self.deduplicator.mark_processed(event.event_id, event.type, session=session):
                    return WebhookResult(event_id=event.event_id, event_type=event.type, outcome="duplicate_event")
                outcome = self._route(event, session)
        except Exception as exc:
            logger.exception(
                "Webhook processing failed",
                extra={"data": {"event_id": event.event_id, "type": event.type}},
            )
            raise WebhookProcessingError("Processing failed") from exc

        self.events.capture(
            "webhook_processed",
            {"event_id": event.event_id, "type": event.type, "outcome": outcome},
            user_id=custom_user_id(event),
        )
        return WebhookResult(event_id=event.event_id, event_type=event.type, outcome=outcome)

    def _route(self, event: NormalizedEvent, session: Session) -> str:
        if isinstance(event, OneTimePaymentEvent) or event.type == ONE_TIME_COMPLETED:
            return self._credit_pack_purchase(event, session)
        if isinstance(event, PaymentEvent):
            return self.state_machine.apply(event, session=session)
        logger.info("Unhandled webhook event", extra={"data": {"type": getattr(event, "type", None)}})
        return "ignored"

    def _credit_pack_purchase(self, event: OneTimePaymentEvent, session: Session) -> str:
        user_id = custom_user_id(event)
        pack_id = event.custom_data.get("packId") or event.custom_data.get("pack_id")
        if not user_id or not pack_id:
            logger.error("Missing userId or packId in credit pack webhook")
            raise ValidationError("Missing required data in webhook payload")

        pack = get_credit_pack(str(pack_id))
        if pack is None:
            logger.error("Unknown credit pack", extra={"data": {"pack_id": pack_id}})
            raise ValidationError(f"Unknown credit pack: {pack_id}")

        record = self.ledger.add_credits(
            user_id,
            pack.credits,
            TRANSACTION_PURCHASE,
            f"Purchased {pack.name} ({pack.credits} credits)",
            reference_id=event.provider_transaction_id,
            session=session,
        )
        logger.info(
            "Credit pack purchased",
            extra={"data": {"user_id": user_id, "pack_id": pack.id, "credits": pack.credits, "balance": record.balance}},
        )
        return "applied"
