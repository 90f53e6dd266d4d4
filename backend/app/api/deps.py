from dataclasses import dataclass
from typing import Annotated, Callable

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from ..core.auth import SessionStore, User
from ..core.config import settings
from ..core.database import Database
from ..core.metrics import EventSink, NullEventSink
from ..services.access import AccessCheckResult, FeatureAccessGate
from ..services.credits import CreditsLedger
from ..services.payments import PaymentProvider
from ..services.subscriptions import SubscriptionStateMachine, SubscriptionStore
from ..services.webhook_events import WebhookDeduplicator
from ..services.webhooks import WebhookProcessor

# Bearer session tokens; the token URL only feeds the Swagger UI
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/token")


@dataclass(frozen=True)
class AccessContext:
    user: User
    feature: str
    access: AccessCheckResult


def get_db(request: Request) -> Database:
    """The process-wide database built in the app lifespan."""
    return request.app.state.db


def get_event_sink(request: Request) -> EventSink:
    return getattr(request.app.state, "events", None) or NullEventSink()


def get_session_store(db: Database = Depends(get_db)) -> SessionStore:
    return SessionStore(db=db)


def get_credits_ledger(db: Database = Depends(get_db)) -> CreditsLedger:
    return CreditsLedger(db=db)


def get_subscription_store(
    db: Database = Depends(get_db),
    ledger: CreditsLedger = Depends(get_credits_ledger),
) -> SubscriptionStore:
    return SubscriptionStore(db=db, ledger=ledger)


def get_access_gate(
    ledger: CreditsLedger = Depends(get_credits_ledger),
    subscriptions: SubscriptionStore = Depends(get_subscription_store),
    events: EventSink = Depends(get_event_sink),
) -> FeatureAccessGate:
    return FeatureAccessGate(ledger, subscriptions, events=events)


def get_payment_provider(request: Request) -> PaymentProvider:
    provider = getattr(request.app.state, "payment_provider", None)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return provider


def get_webhook_processor(
    db: Database = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    ledger: CreditsLedger = Depends(get_credits_ledger),
    subscriptions: SubscriptionStore = Depends(get_subscription_store),
    events: EventSink = Depends(get_event_sink),
) -> WebhookProcessor:
    state_machine = SubscriptionStateMachine(
        subscriptions,
        credits_per_month=settings.pro_credits_per_month,
        provider_name=provider.name,
        events=events,
    )
    return WebhookProcessor(
        db,
        provider,
        state_machine,
        ledger,
        WebhookDeduplicator(db),
        tolerance_seconds=settings.webhook_timestamp_tolerance_seconds,
        events=events,
    )


async def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
    session_store: SessionStore = Depends(get_session_store),
) -> User:
    """Validate session token and return current user."""
    user = session_store.authenticate(token)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_feature_access(feature: str) -> Callable[..., AccessContext]:
    """Dependency factory that admits the caller only if the feature gate allows it."""

    def dependency(
        current_user: User = Depends(get_current_user),
        gate: FeatureAccessGate = Depends(get_access_gate),
    ) -> AccessContext:
        access = gate.require(current_user.id, feature)
        return AccessContext(user=current_user, feature=feature, access=access)

    return dependency
