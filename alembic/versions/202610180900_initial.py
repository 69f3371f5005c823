"""initial schema: accounts, snapshots, income entries, transactions

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "auto_adjust_balances_from_income",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "checking",
                "savings",
                "credit_card",
                "investment",
                "retirement",
                "loan",
                "crypto",
                "cash",
                "other",
                name="accounttype",
            ),
            nullable=False,
        ),
        sa.Column("institution", sa.String(length=100)),
        sa.Column("is_shared", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "name", name="uq_account_user_name"),
    )
    op.create_index("ix_accounts_user", "accounts", ["user_id"])

    op.create_table(
        "account_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id",
            sa.String(length=36),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("balance_cents", sa.Integer(), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column(
            "source",
            sa.Enum("manual", "income", name="snapshotsource"),
            nullable=False,
            server_default="manual",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "account_id", "snapshot_date", name="uq_snapshot_account_date"
        ),
    )
    op.create_index(
        "ix_snapshot_account_date",
        "account_snapshots",
        ["account_id", "snapshot_date"],
    )
    op.create_index(
        "ix_snapshot_account_source_date",
        "account_snapshots",
        ["account_id", "source", "snapshot_date"],
    )

    op.create_table(
        "income_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "account_id",
            sa.String(length=36),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "entry_type",
            sa.Enum("income", "401k", "hsa", name="incomeentrytype"),
            nullable=False,
            server_default="income",
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("received_date", sa.Date(), nullable=False),
        sa.Column("source", sa.String(length=200)),
        sa.Column("note", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_income_amount_positive"),
    )
    op.create_index(
        "ix_income_account_received",
        "income_entries",
        ["account_id", "received_date"],
    )
    op.create_index(
        "ix_income_user_received",
        "income_entries",
        ["user_id", "received_date"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("paid_by", sa.String(length=64)),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_transactions_amount_positive"
        ),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index("ix_transactions_paid_by", "transactions", ["paid_by"])


def downgrade() -> None:
    op.drop_index("ix_transactions_paid_by", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_income_user_received", table_name="income_entries")
    op.drop_index("ix_income_account_received", table_name="income_entries")
    op.drop_table("income_entries")
    op.drop_index("ix_snapshot_account_source_date", table_name="account_snapshots")
    op.drop_index("ix_snapshot_account_date", table_name="account_snapshots")
    op.drop_table("account_snapshots")
    op.drop_index("ix_accounts_user", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("profiles")
