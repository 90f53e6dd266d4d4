"""SQLAlchemy ORM models for the billing database.

Every timestamp column holds integer Unix seconds (UTC).
"""

from __future__ import annotations

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, Integer, String, Text, false
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class DbUser(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    created_at: Mapped[int] = mapped_column(Integer)


class DbSession(Base):
    __tablename__ = "sessions"

    token_hash: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    created_at: Mapped[int] = mapped_column(Integer)
    expires_at: Mapped[int] = mapped_column(Integer, index=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)


class DbUserSettings(Base):
    """Fast-path cache of the user's subscription tier."""

    __tablename__ = "user_settings"

    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    subscription_tier: Mapped[str] = mapped_column(String(10), default="free", server_default="free")
    updated_at: Mapped[int] = mapped_column(Integer)

    __table_args__ = (
        CheckConstraint("subscription_tier IN ('free','pro')", name="chk_user_settings_tier"),
    )


class DbUserCredits(Base):
    __tablename__ = "user_credits"

    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    balance: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    subscription_credits_per_month: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    total_granted: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    total_consumed: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    total_purchased: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    last_refresh_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_refresh_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer)
    updated_at: Mapped[int] = mapped_column(Integer)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="chk_user_credits_balance_nonnegative"),
        CheckConstraint(
            "subscription_credits_per_month >= 0",
            name="chk_user_credits_monthly_nonnegative",
        ),
        Index("idx_user_credits_next_refresh", "next_refresh_at"),
    )


class DbCreditTransaction(Base):
    """Append-only audit log; one row per balance-changing operation."""

    __tablename__ = "credit_transactions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    type: Mapped[str] = mapped_column(String(32))
    amount: Mapped[int] = mapped_column(Integer)
    balance_before: Mapped[int] = mapped_column(Integer)
    balance_after: Mapped[int] = mapped_column(Integer)
    feature_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str] = mapped_column(String(255))
    reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    created_at: Mapped[int] = mapped_column(Integer)

    __table_args__ = (
        CheckConstraint(
            "type IN ('subscription_grant','purchase','refund','consumption','adjustment')",
            name="chk_credit_transactions_type",
        ),
        CheckConstraint("balance_after = balance_before + amount", name="chk_credit_transactions_arithmetic"),
        Index("idx_credit_transactions_user_created_at", "user_id", "created_at"),
        Index("idx_credit_transactions_feature", "feature_id"),
    )


class DbProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100))
    processed_at: Mapped[int] = mapped_column(Integer, index=True)


class DbSubscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(32))
    provider_subscription_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    provider_customer_id: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20))
    billing_cycle: Mapped[str] = mapped_column(String(10))
    current_period_start: Mapped[int] = mapped_column(Integer)
    current_period_end: Mapped[int] = mapped_column(Integer)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    created_at: Mapped[int] = mapped_column(Integer)
    updated_at: Mapped[int] = mapped_column(Integer)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active','trialing','past_due','cancelled','paused','expired')",
            name="chk_subscriptions_status",
        ),
        CheckConstraint("billing_cycle IN ('monthly','yearly')", name="chk_subscriptions_billing_cycle"),
        Index("idx_subscriptions_status_period_end", "status", "current_period_end"),
    )
