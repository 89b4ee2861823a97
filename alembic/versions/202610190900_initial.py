"""initial schema: profiles, transactions, balance ledger, insights

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=128), primary_key=True),
        sa.Column("display_name", sa.String(length=50), nullable=True),
        sa.Column("photo_url", sa.Text(), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id", sa.String(length=128), sa.ForeignKey("profiles.id"), nullable=False
        ),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("income", "expense", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("client_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "client_id", name="uq_txn_user_client_id"),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_user_occurred", "transactions", ["user_id", "occurred_at"]
    )
    op.create_index(
        "ix_transactions_user_type_occurred",
        "transactions",
        ["user_id", "type", "occurred_at"],
    )

    op.create_table(
        "balance_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id", sa.String(length=128), sa.ForeignKey("profiles.id"), nullable=False
        ),
        sa.Column("operation_id", sa.String(length=160), nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=True),
        sa.Column(
            "kind",
            sa.Enum(
                "income",
                "expense",
                "edit",
                "delete",
                "import",
                "adjustment",
                name="entrykind",
            ),
            nullable=False,
        ),
        sa.Column("delta_cents", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "operation_id", name="uq_entry_user_operation"),
    )
    op.create_index(
        "ix_balance_entries_user_txn", "balance_entries", ["user_id", "transaction_id"]
    )

    op.create_table(
        "insights",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id", sa.String(length=128), sa.ForeignKey("profiles.id"), nullable=False
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("detailed_analysis", sa.Text(), nullable=False),
    )
    op.create_index("ix_insights_user_created", "insights", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_insights_user_created", table_name="insights")
    op.drop_table("insights")
    op.drop_index("ix_balance_entries_user_txn", table_name="balance_entries")
    op.drop_table("balance_entries")
    op.drop_index("ix_transactions_user_type_occurred", table_name="transactions")
    op.drop_index("ix_transactions_user_occurred", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("profiles")
