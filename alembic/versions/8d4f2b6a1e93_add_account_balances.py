"""add_account_balances

Revision ID: 8d4f2b6a1e93
Revises: 3c1e9a7b5d20
Create Date: 2026-10-19 14:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "8d4f2b6a1e93"
down_revision: Union[str, None] = "3c1e9a7b5d20"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "account_balances",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column("available", sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column("current_balance", sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column("limit_amount", sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column("iso_currency_code", sa.String(length=3), nullable=True),
        sa.Column("unofficial_currency_code", sa.String(length=10), nullable=True),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refreshed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id"),
    )
    op.create_index(op.f("ix_account_balances_user_id"), "account_balances", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_account_balances_user_id"), table_name="account_balances")
    op.drop_table("account_balances")
