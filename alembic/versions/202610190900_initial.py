"""initial budget aggregation schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


CATEGORY_VALUES = (
    "Essentials",
    "Food & Entertainment",
    "Shopping",
    "Health & Wellness",
    "Other",
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=128), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("from_date", sa.Date(), nullable=False),
        sa.Column("to_date", sa.Date(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("from_date <= to_date", name="ck_budget_window_ordered"),
    )
    op.create_index(
        "ix_budgets_user_window", "budgets", ["user_id", "from_date", "to_date"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=128), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "category", sa.Enum(*CATEGORY_VALUES, name="category"), nullable=False
        ),
        sa.Column(
            "budget_id",
            sa.String(length=64),
            sa.ForeignKey("budgets.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index("ix_transactions_budget", "transactions", ["budget_id"])

    op.create_table(
        "budget_aggregates",
        sa.Column(
            "budget_id",
            sa.String(length=64),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_budget_aggregates_user", "budget_aggregates", ["user_id"])

    op.create_table(
        "budget_category_totals",
        sa.Column(
            "budget_id",
            sa.String(length=64),
            sa.ForeignKey("budget_aggregates.budget_id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "category",
            sa.Enum(*CATEGORY_VALUES, name="category"),
            primary_key=True,
        ),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default="0"),
    )


def downgrade():
    op.drop_table("budget_category_totals")
    op.drop_index("ix_budget_aggregates_user", table_name="budget_aggregates")
    op.drop_table("budget_aggregates")
    op.drop_index("ix_transactions_budget", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_budgets_user_window", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("users")
