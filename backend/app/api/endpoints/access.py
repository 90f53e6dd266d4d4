from typing import Any

from fastapi import APIRouter, Depends

from ...core.auth import User
from ...schemas.billing import AccessCheckResponse, UpgradePromptResponse
from ...services.access import FeatureAccessGate
from ..deps import get_access_gate, get_current_user

router = APIRouter()


@router.get("/{feature}", response_model=AccessCheckResponse)
def check_feature_access(
    feature: str,
    current_user: User = Depends(get_current_user),
    gate: FeatureAccessGate = Depends(get_access_gate),
) -> Any:
    """Report whether the caller may use ``feature`` without charging anything."""
    result = gate.check_access(current_user.id, feature)
    prompt = UpgradePromptResponse.model_validate(result.upgrade_prompt) if result.upgrade_prompt else None
    return AccessCheckResponse(
        feature=feature,
        allowed=result.allowed,
        reason=result.reason,
        upgrade_prompt=prompt,
    )
