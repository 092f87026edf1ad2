"""Track every completed order the loyalty engine processed.

Revision ID: 20261019_01
Revises: 20261018_01
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: Union[str, None] = "20261018_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

order_result = sa.Enum("qualifying", "non_qualifying", "no_customer", "no_offers", name="loyalty_order_result")


def upgrade() -> None:
    op.create_table(
        "loyalty_processed_orders",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "merchant_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("merchants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("square_order_id", sa.String(), nullable=False),
        sa.Column("square_customer_id", sa.String(), nullable=True),
        sa.Column("result_type", order_result, nullable=False),
        sa.Column("qualifying_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_line_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("customer_source", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=False, server_default="WEBHOOK"),
        sa.Column("trace_id", sa.String(length=64), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("merchant_id", "square_order_id", name="uq_loyalty_processed_orders_order"),
    )
    op.create_index(
        "ix_loyalty_processed_orders_result",
        "loyalty_processed_orders",
        ["merchant_id", "result_type", "processed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_loyalty_processed_orders_result", table_name="loyalty_processed_orders")
    op.drop_table("loyalty_processed_orders")
    order_result.drop(op.get_bind(), checkfirst=True)
