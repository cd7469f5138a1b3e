"""initial ledger schema

Revision ID: 202610170900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610170900"
down_revision = None
branch_labels = None
depends_on = None


direction_enum = sa.Enum("income", "expense", name="transactiondirection")
frequency_enum = sa.Enum(
    "daily", "weekly", "monthly", "yearly", name="recurrencefrequency"
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("description", sa.Text()),
        *_timestamps(),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("description", sa.String(length=512)),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("tags.id")),
        *_timestamps(),
        sa.UniqueConstraint("name", name="uq_tag_name"),
    )

    op.create_table(
        "recurrences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("start_date", sa.DateTime(), nullable=False),
        sa.Column("end_date", sa.DateTime()),
        sa.Column("frequency", frequency_enum, nullable=False),
        sa.Column("direction", direction_enum, nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("materialized_until", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint(
            "end_date IS NULL OR end_date >= start_date",
            name="ck_recurrence_end_after_start",
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_recurrence_amount_positive"),
    )
    op.create_index(
        "ix_recurrences_account_start", "recurrences", ["account_id", "start_date"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("value_date", sa.DateTime(), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("direction", direction_enum, nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("recurrence_id", sa.Integer(), sa.ForeignKey("recurrences.id")),
        *_timestamps(),
        sa.UniqueConstraint(
            "recurrence_id", "value_date", name="uq_txn_recurrence_occurrence"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "value_date"]
    )
    op.create_index(
        "ix_transactions_account_direction_date",
        "transactions",
        ["account_id", "direction", "value_date"],
    )
    op.create_index("ix_transactions_recurrence", "transactions", ["recurrence_id"])

    op.create_table(
        "transaction_tags",
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )

    op.create_table(
        "recurrence_tags",
        sa.Column(
            "recurrence_id",
            sa.Integer(),
            sa.ForeignKey("recurrences.id"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )


def downgrade():
    op.drop_table("recurrence_tags")
    op.drop_table("transaction_tags")
    op.drop_index("ix_transactions_recurrence", table_name="transactions")
    op.drop_index("ix_transactions_account_direction_date", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_recurrences_account_start", table_name="recurrences")
    op.drop_table("recurrences")
    op.drop_table("tags")
    op.drop_table("accounts")
