"""Wallet ledger, server billing, cancellations and deploy orders

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TS = sa.DateTime(timezone=True)


def upgrade() -> None:
    # One wallet per owner; balance is a cache of SUM(wallet_transactions)
    op.create_table(
        "wallets",
        sa.Column("owner_id", sa.Text(), primary_key=True),
        sa.Column("balance_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("payment_customer_id", sa.Text(), nullable=True, unique=True),
        sa.Column("provisioning_user_id", sa.Text(), nullable=True),
        sa.Column("auto_topup_enabled", sa.Boolean(), nullable=False,
                  server_default=sa.false()),
        sa.Column("auto_topup_threshold_cents", sa.BigInteger(), nullable=False,
                  server_default="0"),
        sa.Column("auto_topup_amount_cents", sa.BigInteger(), nullable=False,
                  server_default="0"),
        sa.Column("auto_topup_payment_method_id", sa.Text(), nullable=True),
        sa.Column("audit_hold_at", TS, nullable=True),
        sa.Column("audit_hold_reason", sa.Text(), nullable=True),
        sa.Column("deleted_at", TS, nullable=True),
        sa.Column("created_at", TS, nullable=False),
        sa.Column("updated_at", TS, nullable=False),
    )

    # Append-only
    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("gateway_event_id", sa.Text(), nullable=True, unique=True),
        sa.Column("created_at", TS, nullable=False),
    )
    op.create_index("idx_wallet_tx_owner", "wallet_transactions", ["owner_id", "id"])

    op.create_table(
        "server_billing",
        sa.Column("server_id", sa.Text(), primary_key=True),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("plan_id", sa.Integer(), nullable=False),
        sa.Column("monthly_price_cents", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.Column("next_bill_at", TS, nullable=False),
        sa.Column("suspend_at", TS, nullable=True),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deployed_at", TS, nullable=False),
        sa.Column("period_day", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("first_failed_at", TS, nullable=True),
        sa.Column("last_billed_at", TS, nullable=True),
        sa.Column("created_at", TS, nullable=False),
        sa.Column("updated_at", TS, nullable=False),
    )
    op.create_index("idx_server_billing_due", "server_billing", ["status", "next_bill_at"])
    op.create_index("idx_server_billing_owner", "server_billing", ["owner_id"])

    op.create_table(
        "server_cancellations",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("server_id", sa.Text(), nullable=False),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("server_name", sa.Text(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("mode", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="queued"),
        sa.Column("requested_at", TS, nullable=False),
        sa.Column("scheduled_deletion_at", TS, nullable=False),
        sa.Column("completed_at", TS, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index(
        "idx_cancellations_due", "server_cancellations", ["status", "scheduled_deletion_at"]
    )

    op.create_table(
        "deploy_orders",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("plan_id", sa.Integer(), nullable=False),
        sa.Column("price_cents", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending_payment"),
        sa.Column("server_id", sa.Text(), nullable=True),
        sa.Column("created_at", TS, nullable=False),
        sa.Column("updated_at", TS, nullable=False),
    )
    op.create_index("idx_deploy_orders_owner", "deploy_orders", ["owner_id", "status"])


def downgrade() -> None:
    op.drop_table("deploy_orders")
    op.drop_table("server_cancellations")
    op.drop_table("server_billing")
    op.drop_table("wallet_transactions")
    op.drop_table("wallets")
