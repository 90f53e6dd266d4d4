"""Billing schema: users, sessions, credits ledger, subscriptions, webhook dedup.

Revision ID: 0001_billing_schema
Revises:
Create Date: 2026-01-12
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_billing_schema"
down_revision = None
branch_labels = None
depends_on = None


def _user_fk() -> sa.Column:
    return sa.Column(
        "user_id",
        sa.String(length=64),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.Integer(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "sessions",
        sa.Column("token_hash", sa.String(length=128), primary_key=True),
        _user_fk(),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.Integer(), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=True),
    )
    op.create_index("ix_sessions_user_id", "sessions", ["user_id"])
    op.create_index("ix_sessions_expires_at", "sessions", ["expires_at"])

    op.create_table(
        "user_settings",
        sa.Column(
            "user_id",
            sa.String(length=64),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("subscription_tier", sa.String(length=10), nullable=False, server_default="free"),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.CheckConstraint("subscription_tier IN ('free','pro')", name="chk_user_settings_tier"),
    )

    op.create_table(
        "user_credits",
        sa.Column(
            "user_id",
            sa.String(length=64),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subscription_credits_per_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_granted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_consumed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_purchased", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_refresh_at", sa.Integer(), nullable=True),
        sa.Column("next_refresh_at", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.CheckConstraint("balance >= 0", name="chk_user_credits_balance_nonnegative"),
        sa.CheckConstraint(
            "subscription_credits_per_month >= 0",
            name="chk_user_credits_monthly_nonnegative",
        ),
    )
    op.create_index("idx_user_credits_next_refresh", "user_credits", ["next_refresh_at"])

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(length=32), primary_key=True),
        _user_fk(),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("feature_id", sa.String(length=64), nullable=True),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("reference_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.CheckConstraint(
            "type IN ('subscription_grant','purchase','refund','consumption','adjustment')",
            name="chk_credit_transactions_type",
        ),
        sa.CheckConstraint(
            "balance_after = balance_before + amount",
            name="chk_credit_transactions_arithmetic",
        ),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])
    op.create_index("ix_credit_transactions_reference_id", "credit_transactions", ["reference_id"])
    op.create_index(
        "idx_credit_transactions_user_created_at",
        "credit_transactions",
        ["user_id", "created_at"],
    )
    op.create_index("idx_credit_transactions_feature", "credit_transactions", ["feature_id"])

    # Rows older than the retention window are pruned by the maintenance CLI
    op.create_table(
        "processed_webhook_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("processed_at", sa.Integer(), nullable=False),
    )
    op.create_index(
        "ix_processed_webhook_events_processed_at",
        "processed_webhook_events",
        ["processed_at"],
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=32), primary_key=True),
        _user_fk(),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("provider_subscription_id", sa.String(length=255), nullable=False),
        sa.Column("provider_customer_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("billing_cycle", sa.String(length=10), nullable=False),
        sa.Column("current_period_start", sa.Integer(), nullable=False),
        sa.Column("current_period_end", sa.Integer(), nullable=False),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.CheckConstraint(
            "status IN ('active','trialing','past_due','cancelled','paused','expired')",
            name="chk_subscriptions_status",
        ),
        sa.CheckConstraint("billing_cycle IN ('monthly','yearly')", name="chk_subscriptions_billing_cycle"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=True)
    op.create_index(
        "ix_subscriptions_provider_subscription_id",
        "subscriptions",
        ["provider_subscription_id"],
        unique=True,
    )
    op.create_index(
        "idx_subscriptions_status_period_end",
        "subscriptions",
        ["status", "current_period_end"],
    )


def downgrade() -> None:
    op.drop_index("idx_subscriptions_status_period_end", table_name="subscriptions")
    op.drop_index("ix_subscriptions_provider_subscription_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_processed_webhook_events_processed_at", table_name="processed_webhook_events")
    op.drop_table("processed_webhook_events")
    op.drop_index("idx_credit_transactions_feature", table_name="credit_transactions")
    op.drop_index("idx_credit_transactions_user_created_at", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_reference_id", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_index("idx_user_credits_next_refresh", table_name="user_credits")
    op.drop_table("user_credits")
    op.drop_table("user_settings")
    op.drop_index("ix_sessions_expires_at", table_name="sessions")
    op.drop_index("ix_sessions_user_id", table_name="sessions")
    op.drop_table("sessions")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
