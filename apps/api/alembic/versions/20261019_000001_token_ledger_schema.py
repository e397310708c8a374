"""token ledger, subscription state and billing customer tables

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "token_accounts",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_allowance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tier", sa.String(), nullable=False, server_default="free"),
        sa.Column("last_reset_date", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("balance >= 0", name="ck_token_accounts_balance_non_negative"),
        sa.CheckConstraint("monthly_allowance >= 0", name="ck_token_accounts_allowance_non_negative"),
        sa.CheckConstraint("tier IN ('free', 'creator', 'pro')", name="ck_token_accounts_tier"),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_token_accounts_last_reset_date", "token_accounts", ["last_reset_date"], unique=False)

    op.create_table(
        "token_usage",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("tokens_used", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("script_id", sa.String(), nullable=True),
        sa.Column("mentor_id", sa.String(), nullable=True),
        sa.Column("scene_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint("tokens_used > 0", name="ck_token_usage_tokens_positive"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_token_usage_user_id", "token_usage", ["user_id"], unique=False)
    op.create_index("ix_token_usage_created_at", "token_usage", ["created_at"], unique=False)
    op.create_index("ix_token_usage_user_created", "token_usage", ["user_id", "created_at"], unique=False)

    op.create_table(
        "token_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("tokens_added", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("external_payment_id", sa.String(), nullable=True),
        sa.Column("external_subscription_id", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_token_transactions_user_id", "token_transactions", ["user_id"], unique=False)
    op.create_index("ix_token_transactions_external_payment_id", "token_transactions", ["external_payment_id"], unique=False)
    op.create_index("ix_token_transactions_created_at", "token_transactions", ["created_at"], unique=False)

    op.create_table(
        "subscription_states",
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("price_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="not_started"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("customer_id"),
    )
    op.create_index("ix_subscription_states_subscription_id", "subscription_states", ["subscription_id"], unique=False)

    op.create_table(
        "billing_customers",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_billing_customers_customer_id", "billing_customers", ["customer_id"], unique=True)

    op.create_table(
        "token_purchases",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("checkout_session_id", sa.String(), nullable=False),
        sa.Column("payment_intent_id", sa.String(), nullable=True),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("price_id", sa.String(), nullable=True),
        sa.Column("tokens_purchased", sa.Integer(), nullable=False),
        sa.Column("amount_total", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_token_purchases_checkout_session_id", "token_purchases", ["checkout_session_id"], unique=True)
    op.create_index("ix_token_purchases_customer_id", "token_purchases", ["customer_id"], unique=False)
    op.create_index("ix_token_purchases_user_id", "token_purchases", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_token_purchases_user_id", table_name="token_purchases")
    op.drop_index("ix_token_purchases_customer_id", table_name="token_purchases")
    op.drop_index("ix_token_purchases_checkout_session_id", table_name="token_purchases")
    op.drop_table("token_purchases")

    op.drop_index("ix_billing_customers_customer_id", table_name="billing_customers")
    op.drop_table("billing_customers")

    op.drop_index("ix_subscription_states_subscription_id", table_name="subscription_states")
    op.drop_table("subscription_states")

    op.drop_index("ix_token_transactions_created_at", table_name="token_transactions")
    op.drop_index("ix_token_transactions_external_payment_id", table_name="token_transactions")
    op.drop_index("ix_token_transactions_user_id", table_name="token_transactions")
    op.drop_table("token_transactions")

    op.drop_index("ix_token_usage_user_created", table_name="token_usage")
    op.drop_index("ix_token_usage_created_at", table_name="token_usage")
    op.drop_index("ix_token_usage_user_id", table_name="token_usage")
    op.drop_table("token_usage")

    op.drop_index("ix_token_accounts_last_reset_date", table_name="token_accounts")
    op.drop_table("token_accounts")
