from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel


class CreditTransactionResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    type: str
    amount: int
    balance_before: int
    balance_after: int
    feature_id: Optional[str]
    description: str
    reference_id: Optional[str]
    created_at: int


class CreditsSummaryResponse(BaseModel):
    model_config = {"from_attributes": True}

    balance: int
    subscription_credits_per_month: int
    total_granted: int
    total_consumed: int
    total_purchased: int
    last_refresh_at: Optional[int]
    next_refresh_at: Optional[int]
    recent_transactions: List[CreditTransactionResponse]


class TransactionsPageResponse(BaseModel):
    items: List[CreditTransactionResponse]
    limit: int
    offset: int


class CreditPackResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    name: str
    credits: int
    price_in_cents: int
    popular: bool


class UpgradePromptResponse(BaseModel):
    model_config = {"from_attributes": True}

    title: str
    description: str
    cta_text: str
    cta_href: str


class AccessCheckResponse(BaseModel):
    model_config = {"from_attributes": True}

    feature: str
    allowed: bool
    reason: Optional[str] = None
    upgrade_prompt: Optional[UpgradePromptResponse] = None


class SubscriptionResponse(BaseModel):
    model_config = {"from_attributes": True}

    provider: str
    provider_subscription_id: str
    status: str
    billing_cycle: str
    current_period_start: int
    current_period_end: int
    cancel_at_period_end: bool


class AccessStateResponse(BaseModel):
    model_config = {"from_attributes": True}

    tier: str
    is_pro: bool
    balance: int
    has_credits: bool


class WebhookAckResponse(BaseModel):
    received: bool = True
    deduplicated: Optional[bool] = None
