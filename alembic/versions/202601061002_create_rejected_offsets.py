"""create rejected offsets

Revision ID: 202601061002
Revises: 202601061001
Create Date: 2026-01-06 10:00:02.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601061002"
down_revision = "202601061001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "rejected_offsets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "expense_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "offset_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "expense_transaction_id",
            "offset_transaction_id",
            name="uq_rejected_offsets_pair",
        ),
    )


def downgrade() -> None:
    op.drop_table("rejected_offsets")
