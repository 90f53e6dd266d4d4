from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query

from ...core.auth import User
from ...schemas.billing import (
    CreditPackResponse,
    CreditsSummaryResponse,
    CreditTransactionResponse,
    TransactionsPageResponse,
)
from ...services.credits import CreditsLedger
from ...services.plans import CREDIT_PACKS
from ..deps import get_credits_ledger, get_current_user

router = APIRouter()


@router.get("", response_model=CreditsSummaryResponse)
def read_credits(
    current_user: User = Depends(get_current_user),
    ledger: CreditsLedger = Depends(get_credits_ledger),
) -> Any:
    """Balance summary plus the ten most recent transactions."""
    record = ledger.get_or_create(current_user.id)
    recent = ledger.recent_transactions(current_user.id, limit=10)
    return CreditsSummaryResponse(
        balance=record.balance,
        subscription_credits_per_month=record.subscription_credits_per_month,
        total_granted=record.total_granted,
        total_consumed=record.total_consumed,
        total_purchased=record.total_purchased,
        last_refresh_at=record.last_refresh_at,
        next_refresh_at=record.next_refresh_at,
        recent_transactions=[CreditTransactionResponse.model_validate(tx) for tx in recent],
    )


@router.get("/transactions", response_model=TransactionsPageResponse)
def read_transactions(
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    type: Optional[str] = Query(default=None),
    current_user: User = Depends(get_current_user),
    ledger: CreditsLedger = Depends(get_credits_ledger),
) -> Any:
    items = ledger.recent_transactions(current_user.id, limit=limit, offset=offset, transaction_type=type)
    return TransactionsPageResponse(
        items=[CreditTransactionResponse.model_validate(tx) for tx in items],
        limit=limit,
        offset=offset,
    )


@router.get("/packs", response_model=List[CreditPackResponse])
def read_credit_packs(current_user: User = Depends(get_current_user)) -> Any:
    return [CreditPackResponse.model_validate(pack) for pack in CREDIT_PACKS]
