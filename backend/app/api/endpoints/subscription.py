from typing import Any, Optional

from fastapi import APIRouter, Depends

from ...core.auth import User
from ...schemas.billing import AccessStateResponse, SubscriptionResponse
from ...services.access import FeatureAccessGate
from ...services.subscriptions import SubscriptionStore
from ..deps import get_access_gate, get_current_user, get_subscription_store

router = APIRouter()


@router.get("", response_model=Optional[SubscriptionResponse])
def read_subscription(
    current_user: User = Depends(get_current_user),
    subscriptions: SubscriptionStore = Depends(get_subscription_store),
) -> Any:
    subscription = subscriptions.get_by_user(current_user.id)
    if subscription is None:
        return None
    return SubscriptionResponse.model_validate(subscription)


@router.get("/status", response_model=AccessStateResponse)
def read_access_state(
    current_user: User = Depends(get_current_user),
    gate: FeatureAccessGate = Depends(get_access_gate),
) -> Any:
    return AccessStateResponse.model_validate(gate.access_state(current_user.id))
