"""create offsets

Revision ID: 202601061001
Revises: 202601061000
Create Date: 2026-01-06 10:00:01.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601061001"
down_revision = "202601061000"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "offsets",
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
        sa.Column(
            "status",
            sa.Enum("pending", "confirmed", name="offsetstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "expense_transaction_id",
            "offset_transaction_id",
            name="uq_offsets_expense_offset",
        ),
        sa.UniqueConstraint(
            "offset_transaction_id", name="uq_offsets_offset_transaction"
        ),
    )
    op.create_index("ix_offsets_status", "offsets", ["status"])


def downgrade() -> None:
    op.drop_index("ix_offsets_status", table_name="offsets")
    op.drop_table("offsets")
