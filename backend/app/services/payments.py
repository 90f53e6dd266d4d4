"""Provider-neutral payment events and the ``PaymentProvider`` seam."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Union

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_UPDATED = "subscription.updated"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"
SUBSCRIPTION_PAYMENT_SUCCEEDED = "subscription.payment_succeeded"
SUBSCRIPTION_PAYMENT_FAILED = "subscription.payment_failed"
ONE_TIME_COMPLETED = "one_time.completed"

SUBSCRIPTION_EVENT_TYPES = (
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_PAYMENT_SUCCEEDED,
    SUBSCRIPTION_PAYMENT_FAILED,
)


@dataclass(frozen=True, slots=True)
class PaymentEvent:
    """Normalized subscription lifecycle event."""

    type: str
    provider_subscription_id: str
    provider_customer_id: str
    status: str
    billing_cycle: str
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    custom_data: dict[str, Any] = field(default_factory=dict)
    event_id: str | None = None
    occurred_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class OneTimePaymentEvent:
    """Normalized one-off purchase (credit pack) event."""

    provider_transaction_id: str
    provider_customer_id: str
    product_id: str | None = None
    custom_data: dict[str, Any] = field(default_factory=dict)
    event_id: str | None = None
    occurred_at: datetime | None = None
    type: str = ONE_TIME_COMPLETED


NormalizedEvent = Union[PaymentEvent, OneTimePaymentEvent]


def custom_user_id(event: NormalizedEvent) -> str | None:
    value = event.custom_data.get("userId") or event.custom_data.get("user_id")
    return str(value) if value else None


def to_timestamp(value: datetime) -> int:
    """Unix seconds; naive datetimes are read as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


class PaymentProvider(ABC):
    """
    Abstract base class for payment providers.

    Implementations own signature verification and payload parsing for their
    webhook format.
    """

    name: str = "unknown"

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: str) -> NormalizedEvent | None:
        """
        Verify and normalize one webhook delivery.

        Args:
            payload: Raw request body exactly as received.
            signature: Value of the provider signature header ("" when absent).

        Returns:
            The normalized event, or None when the signature does not verify.
        """


ProviderFactory = Callable[[], PaymentProvider]

_PROVIDER_FACTORIES: dict[str, ProviderFactory] = {}


def register_payment_provider(name: str, factory: ProviderFactory) -> None:
    key = name.strip().lower()
    if not key:
        raise ValueError("Provider name is required")
    _PROVIDER_FACTORIES[key] = factory


def unregister_payment_provider(name: str) -> None:
    _PROVIDER_FACTORIES.pop(name.strip().lower(), None)


def build_payment_provider(name: str) -> PaymentProvider | None:
    factory = _PROVIDER_FACTORIES.get(name.strip().lower())
    if factory is None:
        logger.warning("No payment provider registered", extra={"data": {"provider": name}})
        return None
    return factory()
