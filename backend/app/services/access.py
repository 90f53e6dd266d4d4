"""Feature gating by subscription tier and credit balance."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Generic, TypeVar

from backend.app.core.errors import AuthorizationError, InsufficientCreditsError, sanitize_message
from backend.app.core.metrics import EventSink, NullEventSink
from backend.app.services.credits import TRANSACTION_REFUND, CreditsLedger
from backend.app.services.plans import FEATURE_GATES, TIER_FREE, TIER_PRO, FeatureGate, feature_cost
from backend.app.services.subscriptions import SubscriptionStore

logger = logging.getLogger(__name__)


def _now() -> int:
    return int(time.time())


T = TypeVar("T")

REASON_SUBSCRIPTION_REQUIRED = "subscription_required"
REASON_INSUFFICIENT_CREDITS = "insufficient_credits"
REASON_FEATURE_DISABLED = "feature_disabled"

UPGRADE_HREF = "/upgrade"
CREDITS_HREF = "/credits"


@dataclass(frozen=True, slots=True)
class UpgradePrompt:
    title: str
    description: str
    cta_text: str
    cta_href: str


@dataclass(frozen=True, slots=True)
class AccessCheckResult:
    allowed: bool
    reason: str | None = None
    upgrade_prompt: UpgradePrompt | None = None


@dataclass(frozen=True, slots=True)
class UserAccessState:
    tier: str
    is_pro: bool
    balance: int
    has_credits: bool


@dataclass(frozen=True, slots=True)
class CreditedResult(Generic[T]):
    result: T
    credits_consumed: int
    credits_remaining: int


def _prompt(gate: FeatureGate, href: str) -> UpgradePrompt:
    copy = gate.upgrade_prompt
    return UpgradePrompt(title=copy.title, description=copy.description, cta_text=copy.cta_text, cta_href=href)


class FeatureAccessGate:
    """Answers "may this user run this feature" and charges for credit features."""

    def __init__(
        self,
        ledger: CreditsLedger,
        subscriptions: SubscriptionStore,
        *,
        events: EventSink | None = None,
    ) -> None:
        self.ledger = ledger
        self.subscriptions = subscriptions
        self.events = events or NullEventSink()

    def is_pro(self, user_id: str, now: int | None = None) -> bool:
        now = _now() if now is None else now
        cached = self.subscriptions.get_cached_tier(user_id)
        if cached is None:
            return self.subscriptions.has_active_access(user_id, now)
        if cached != TIER_PRO:
            return False
        # The cache can outlive the paid period until the lapse sweep runs
        subscription = self.subscriptions.get_by_user(user_id)
        return subscription is not None and subscription.current_period_end > now

    def check_access(self, user_id: str, feature: str) -> AccessCheckResult:
        gate = FEATURE_GATES.get(feature)
        if gate is None:
            return AccessCheckResult(allowed=False, reason=REASON_FEATURE_DISABLED)

        if gate.required_tier == TIER_PRO and not self.is_pro(user_id):
            return AccessCheckResult(
                allowed=False,
                reason=REASON_SUBSCRIPTION_REQUIRED,
                upgrade_prompt=_prompt(gate, UPGRADE_HREF),
            )

        if gate.credits_required:
            balance = self.ledger.get_or_create(user_id).balance
            if balance < gate.credits_required:
                return AccessCheckResult(
                    allowed=False,
                    reason=REASON_INSUFFICIENT_CREDITS,
                    upgrade_prompt=_prompt(gate, CREDITS_HREF),
                )

        return AccessCheckResult(allowed=True)

    def require(self, user_id: str, feature: str) -> AccessCheckResult:
        """Like ``check_access`` but raises the matching error on denial."""
        result = self.check_access(user_id, feature)
        if result.allowed:
            return result
        prompt = asdict(result.upgrade_prompt) if result.upgrade_prompt else None
        if result.reason == REASON_INSUFFICIENT_CREDITS:
            raise InsufficientCreditsError(
                required=feature_cost(feature),
                upgrade_prompt=prompt,
            )
        if result.reason == REASON_SUBSCRIPTION_REQUIRED:
            raise AuthorizationError("Pro subscription required", upgrade_prompt=prompt)
        raise AuthorizationError(
            "Feature not available",
            reason=REASON_FEATURE_DISABLED,
            code="FEATURE_DISABLED",
        )

    def with_credits(
        self,
        user_id: str,
        feature: str,
        operation: Callable[[], T],
        *,
        description: str | None = None,
    ) -> CreditedResult[T]:
        """Charge for ``feature``, run ``operation`` and refund if it raises.

        The caller always sees the operation's own exception; a failed refund is
        only logged for manual reconciliation.
        """
        gate = FEATURE_GATES.get(feature)
        if gate is not None and gate.required_tier == TIER_PRO and not self.is_pro(user_id):
            raise AuthorizationError(
                "Pro subscription required",
                upgrade_prompt=asdict(_prompt(gate, UPGRADE_HREF)),
            )

        cost = feature_cost(feature)
        name = gate.name if gate else feature
        try:
            consumed = self.ledger.consume(
                user_id,
                cost,
                feature_id=feature,
                description=description or f"Used {name}",
            )
        except InsufficientCreditsError as exc:
            if gate is not None:
                exc.upgrade_prompt = asdict(_prompt(gate, CREDITS_HREF))
            raise
        self.events.capture("credits_consumed", {"feature": feature, "amount": cost}, user_id=user_id)

        try:
            result = operation()
        except Exception as exc:
            self._refund(user_id, feature, name, cost, exc)
            raise

        return CreditedResult(result=result, credits_consumed=cost, credits_remaining=consumed.balance)

    def access_state(self, user_id: str) -> UserAccessState:
        is_pro = self.is_pro(user_id)
        balance = self.ledger.get_or_create(user_id).balance
        return UserAccessState(
            tier=TIER_PRO if is_pro else TIER_FREE,
            is_pro=is_pro,
            balance=balance,
            has_credits=balance > 0,
        )

    def _refund(self, user_id: str, feature: str, name: str, amount: int, error: Exception) -> None:
        reason = sanitize_message(str(error) or type(error).__name__)
        description = f"Refund for failed {name}: {reason}"[:255]
        try:
            self.ledger.add_credits(user_id, amount, TRANSACTION_REFUND, description, feature_id=feature)
        except Exception:
            logger.exception(
                "Credit refund failed; manual reconciliation required",
                extra={"data": {"user_id": user_id, "feature": feature, "amount": amount}},
            )
            self.events.capture(
                "refund_failed",
                {"feature": feature, "amount": amount, "error": type(error).__name__},
                user_id=user_id,
            )
            return
        logger.info(
            "Credits refunded after failed operation",
            extra={"data": {"user_id": user_id, "feature": feature, "amount": amount}},
        )
        self.events.capture("credits_refunded", {"feature": feature, "amount": amount}, user_id=user_id)
