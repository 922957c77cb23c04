"""add accounts, credit balances, credit ledger, packs, tiers and pricing rules

Revision ID: c7e1a9f3b2d4
Revises:
Create Date: 2026-10-12 09:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "c7e1a9f3b2d4"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("plan", sa.String(length=50), nullable=True),
        sa.Column("billing_anchor_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_accounts_plan", "accounts", ["plan"])

    # Balance cache: one row per account, locked FOR UPDATE by every mutation
    op.create_table(
        "credit_balances",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column("included_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("included_credits_expire_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("purchased_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_monthly_grant_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_grant_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_frozen", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("frozen_reason", sa.String(length=500), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("included_credits >= 0", name="ck_credit_balances_included_non_negative"),
        sa.CheckConstraint("purchased_credits >= 0", name="ck_credit_balances_purchased_non_negative"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id"),
    )

    # Append-only ledger
    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "grant",
                "expire",
                "purchase",
                "debit",
                "refund",
                "reversal",
                name="credit_ledger_entry_type",
            ),
            nullable=False,
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("pool", sa.Enum("included", "purchased", name="credit_pool"), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("feature", sa.String(length=100), nullable=True),
        sa.Column("feature_metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("operation_key", sa.String(length=255), nullable=False),
        sa.Column("reverses_entry_id", sa.UUID(), nullable=True),
        sa.Column("external_reference", sa.String(length=255), nullable=True),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["reverses_entry_id"], ["credit_ledger.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "account_id", "idempotency_key", name="uq_credit_ledger_account_idempotency_key"
        ),
    )
    op.create_index(
        "ix_credit_ledger_account_id_created_at", "credit_ledger", ["account_id", "created_at"]
    )
    op.create_index(
        "ix_credit_ledger_account_id_operation_key", "credit_ledger", ["account_id", "operation_key"]
    )
    op.create_index("ix_credit_ledger_reverses_entry_id", "credit_ledger", ["reverses_entry_id"])
    op.create_index("ix_credit_ledger_type", "credit_ledger", ["type"])
    op.create_index("ix_credit_ledger_feature", "credit_ledger", ["feature"])

    op.create_table(
        "credit_packs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("external_price_id_one_time", sa.String(length=255), nullable=True),
        sa.Column("external_price_id_recurring", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "credit_included_by_tier",
        sa.Column("tier", sa.String(length=50), nullable=False),
        sa.Column("monthly_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("tier"),
    )
    op.bulk_insert(
        sa.table(
            "credit_included_by_tier",
            sa.column("tier", sa.String),
            sa.column("monthly_credits", sa.Integer),
        ),
        [
            {"tier": "free", "monthly_credits": 0},
            {"tier": "grower", "monthly_credits": 50},
            {"tier": "builder", "monthly_credits": 100},
            {"tier": "maven", "monthly_credits": 200},
        ],
    )

    op.create_table(
        "credit_pricing_rules",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("feature", sa.String(length=100), nullable=False),
        sa.Column("rule_key", sa.String(length=100), nullable=False),
        sa.Column("credit_cost", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("feature", "rule_key", name="uq_credit_pricing_rules_feature_rule_key"),
    )
    op.create_index("ix_credit_pricing_rules_feature", "credit_pricing_rules", ["feature"])


def downgrade() -> None:
    op.drop_index("ix_credit_pricing_rules_feature", table_name="credit_pricing_rules")
    op.drop_table("credit_pricing_rules")

    op.drop_table("credit_included_by_tier")
    op.drop_table("credit_packs")

    op.drop_index("ix_credit_ledger_feature", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_type", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_reverses_entry_id", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_account_id_operation_key", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_account_id_created_at", table_name="credit_ledger")
    op.drop_table("credit_ledger")

    op.drop_table("credit_balances")

    op.drop_index("ix_accounts_plan", table_name="accounts")
    op.drop_table("accounts")

    op.execute("DROP TYPE IF EXISTS credit_pool")
    op.execute("DROP TYPE IF EXISTS credit_ledger_entry_type")
