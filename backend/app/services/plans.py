"""Plans, credit packs, AI feature costs and feature gates."""

from __future__ import annotations

from dataclasses import dataclass

TIER_FREE = "free"
TIER_PRO = "pro"
TIERS = (TIER_FREE, TIER_PRO)


@dataclass(frozen=True)
class TierConfig:
    id: str
    name: str
    features: tuple[str, ...]


@dataclass(frozen=True)
class CreditPack:
    id: str
    name: str
    credits: int
    price_in_cents: int
    popular: bool = False


@dataclass(frozen=True)
class AIFeature:
    id: str
    name: str
    description: str
    credit_cost: int


@dataclass(frozen=True)
class UpgradeCopy:
    title: str
    description: str
    cta_text: str


@dataclass(frozen=True)
class FeatureGate:
    feature: str
    name: str
    upgrade_prompt: UpgradeCopy
    required_tier: str | None = None
    credits_required: int | None = None


SUBSCRIPTION_TIERS: dict[str, TierConfig] = {
    TIER_FREE: TierConfig(
        id=TIER_FREE,
        name="Free",
        features=(
            "Expense tracking",
            "Budget setup & management",
            "Income & bill tracking",
            "Basic dashboard",
        ),
    ),
    TIER_PRO: TierConfig(
        id=TIER_PRO,
        name="Pro",
        features=(
            "Everything in Free",
            "Advanced analytics & visualizations",
            "Export to CSV & PDF",
            "Priority support",
        ),
    ),
}

CREDIT_PACKS: tuple[CreditPack, ...] = (
    CreditPack(id="pack_25", name="Starter Pack", credits=25, price_in_cents=299),
    CreditPack(id="pack_75", name="Value Pack", credits=75, price_in_cents=699, popular=True),
    CreditPack(id="pack_200", name="Power Pack", credits=200, price_in_cents=1499),
)

AI_FEATURE_COSTS: dict[str, AIFeature] = {
    "insights": AIFeature(
        id="insights",
        name="AI Insights",
        description="Get personalized spending insights",
        credit_cost=1,
    ),
    "budget_improvement": AIFeature(
        id="budget_improvement",
        name="Budget Improvement Plan",
        description="AI-generated budget optimization suggestions",
        credit_cost=3,
    ),
    "expense_analysis": AIFeature(
        id="expense_analysis",
        name="Expense Analysis",
        description="Deep analysis of spending patterns",
        credit_cost=2,
    ),
    "savings_recommendations": AIFeature(
        id="savings_recommendations",
        name="Savings Recommendations",
        description="Personalized savings strategies",
        credit_cost=2,
    ),
}

_UPGRADE_TO_PRO = "Upgrade to Pro"
_GET_CREDITS = "Get Credits"


def _credits_copy(feature_id: str) -> UpgradeCopy:
    feature = AI_FEATURE_COSTS[feature_id]
    unit = "credit" if feature.credit_cost == 1 else "credits"
    return UpgradeCopy(
        title="Credits Required",
        description=f"You need {feature.credit_cost} {unit} to use {feature.name}.",
        cta_text=_GET_CREDITS,
    )


FEATURE_GATES: dict[str, FeatureGate] = {
    "analytics": FeatureGate(
        feature="analytics",
        name="Analytics",
        required_tier=TIER_PRO,
        upgrade_prompt=UpgradeCopy(
            title="Unlock Analytics",
            description="Get detailed spending visualizations, cash flow diagrams, and trend analysis with Pro.",
            cta_text=_UPGRADE_TO_PRO,
        ),
    ),
    "export_csv": FeatureGate(
        feature="export_csv",
        name="CSV Export",
        required_tier=TIER_PRO,
        upgrade_prompt=UpgradeCopy(
            title="Export Your Data",
            description="Download your expenses as CSV for spreadsheets and tax reporting.",
            cta_text=_UPGRADE_TO_PRO,
        ),
    ),
    "export_pdf": FeatureGate(
        feature="export_pdf",
        name="PDF Reports",
        required_tier=TIER_PRO,
        upgrade_prompt=UpgradeCopy(
            title="Generate Reports",
            description="Create beautiful PDF reports of your spending and budget.",
            cta_text=_UPGRADE_TO_PRO,
        ),
    ),
    **{
        feature_id: FeatureGate(
            feature=feature_id,
            name=feature.name,
            credits_required=feature.credit_cost,
            upgrade_prompt=_credits_copy(feature_id),
        )
        for feature_id, feature in AI_FEATURE_COSTS.items()
    },
}


def get_credit_pack(pack_id: str | None) -> CreditPack | None:
    if not pack_id:
        return None
    return next((pack for pack in CREDIT_PACKS if pack.id == pack_id), None)


def feature_cost(feature_id: str) -> int:
    """Credits charged per use; features without a configured cost cost one credit."""
    gate = FEATURE_GATES.get(feature_id)
    if gate and gate.credits_required:
        return gate.credits_required
    return 1
