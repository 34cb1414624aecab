"""initial schema

Revision ID: 202601150900
Revises:
Create Date: 2026-01-15 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601150900"
down_revision = None
branch_labels = None
depends_on = None


EXPENSE_TYPES = ("one-time", "recurring", "recurring-template", "recurring-instance")


def upgrade():
    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("type", sa.Enum(*EXPENSE_TYPES, name="expensetype"), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("payment_method", sa.String(length=60)),
        sa.Column("description", sa.Text()),
        sa.Column("last_processed", sa.Date()),
        sa.Column("date", sa.Date()),
        sa.Column("recurrence", sa.JSON()),
        sa.Column("recurring_config", sa.JSON()),
        sa.Column(
            "parent_id",
            sa.Integer(),
            sa.ForeignKey("expenses.id", ondelete="CASCADE"),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_expense_amount_positive"),
        sa.UniqueConstraint("parent_id", "date", name="uq_expense_instance_date"),
    )
    op.create_index("ix_expenses_user_type", "expenses", ["user_id", "type"])
    op.create_index("ix_expenses_user_date", "expenses", ["user_id", "date"])

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("backend_id", sa.String(length=60), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=200)),
        sa.Column(
            "is_builtin", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("hidden_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id", "backend_id", name="uq_payment_method_backend_id"
        ),
    )


def downgrade():
    op.drop_table("payment_methods")
    op.drop_index("ix_expenses_user_date", table_name="expenses")
    op.drop_index("ix_expenses_user_type", table_name="expenses")
    op.drop_table("expenses")
