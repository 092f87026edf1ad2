"""Loyalty engine initial schema.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)

merchant_status = sa.Enum(
    "trial", "active", "suspended", "cancelled", "expired", "platform_owner", name="merchant_subscription_status"
)
webhook_status = sa.Enum("processing", "completed", "failed", "ignored", name="webhook_event_status")
reward_status = sa.Enum("earned", "redeemed", "expired", "revoked", name="loyalty_reward_status")
audit_action = sa.Enum(
    "reward_earned",
    "reward_redeemed",
    "reward_expired",
    "reward_revoked",
    "reward_expiry_corrected",
    name="loyalty_audit_action",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "merchants",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("business_name", sa.String(), nullable=False),
        sa.Column("square_merchant_id", sa.String(), nullable=False),
        sa.Column("square_access_token", sa.Text(), nullable=True),
        sa.Column("subscription_status", merchant_status, nullable=False, server_default="trial"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_merchants_square_merchant_id", "merchants", ["square_merchant_id"], unique=True)

    op.create_table(
        "users",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "user_merchants",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("merchant_id", UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("user_id", "merchant_id", name="uq_user_merchants_user_merchant"),
    )

    op.create_table(
        "subscribers",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("square_customer_id", sa.String(), nullable=True),
        sa.Column("square_subscription_id", sa.String(), nullable=True, unique=True),
        sa.Column("subscription_status", sa.String(length=32), nullable=False, server_default="trial"),
        sa.Column("merchant_id", UUID, sa.ForeignKey("merchants.id", ondelete="SET NULL"), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_subscribers_email", "subscribers", ["email"])
    op.create_index("ix_subscribers_square_customer_id", "subscribers", ["square_customer_id"])

    op.create_table(
        "webhook_events",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("square_event_id", sa.String(), nullable=False, unique=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("merchant_id", UUID, sa.ForeignKey("merchants.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", webhook_status, nullable=False, server_default="processing"),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "loyalty_offers",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("merchant_id", UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("offer_name", sa.String(), nullable=False),
        sa.Column("brand_name", sa.String(), nullable=True),
        sa.Column("size_group", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("required_quantity", sa.Integer(), nullable=False),
        sa.Column("reward_quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("window_months", sa.Integer(), nullable=False, server_default="12"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("required_quantity > 0", name="ck_loyalty_offers_required_positive"),
        sa.CheckConstraint("reward_quantity > 0", name="ck_loyalty_offers_reward_positive"),
        sa.CheckConstraint("window_months > 0", name="ck_loyalty_offers_window_positive"),
    )
    op.create_index("ix_loyalty_offers_merchant_id", "loyalty_offers", ["merchant_id"])

    op.create_table(
        "loyalty_qualifying_variations",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("merchant_id", UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("offer_id", UUID, sa.ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("variation_id", sa.String(), nullable=False),
        sa.Column("item_name", sa.String(), nullable=True),
        sa.Column("variation_name", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("merchant_id", "offer_id", "variation_id", name="uq_loyalty_variations_offer_variation"),
    )
    op.create_index(
        "ix_loyalty_variations_merchant_variation",
        "loyalty_qualifying_variations",
        ["merchant_id", "variation_id"],
    )

    op.create_table(
        "loyalty_purchase_events",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("merchant_id", UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("offer_id", UUID, sa.ForeignKey("loyalty_offers.id"), nullable=False),
        sa.Column("square_customer_id", sa.String(), nullable=False),
        sa.Column("square_order_id", sa.String(), nullable=False),
        sa.Column("square_location_id", sa.String(), nullable=True),
        sa.Column("variation_id", sa.String(), nullable=False),
        sa.Column("line_item_uid", sa.String(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=True),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_start_date", sa.Date(), nullable=False),
        sa.Column("window_end_date", sa.Date(), nullable=False),
        sa.Column("is_refund", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("refund_of_event_id", UUID, sa.ForeignKey("loyalty_purchase_events.id"), nullable=True),
        sa.Column("square_refund_id", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("customer_source", sa.String(length=32), nullable=True),
        sa.Column("trace_id", sa.String(length=64), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("merchant_id", "idempotency_key", name="uq_loyalty_purchase_events_idempotency"),
    )
    op.create_index(
        "ix_loyalty_purchase_events_customer_offer",
        "loyalty_purchase_events",
        ["merchant_id", "square_customer_id", "offer_id", "window_end_date"],
    )
    op.create_index(
        "ix_loyalty_purchase_events_order", "loyalty_purchase_events", ["merchant_id", "square_order_id"]
    )

    op.create_table(
        "loyalty_rewards",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("merchant_id", UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("offer_id", UUID, sa.ForeignKey("loyalty_offers.id"), nullable=False),
        sa.Column("square_customer_id", sa.String(), nullable=False),
        sa.Column("status", reward_status, nullable=False, server_default="earned"),
        sa.Column("progress_quantity", sa.Integer(), nullable=False),
        sa.Column("window_start_date", sa.Date(), nullable=True),
        sa.Column("window_end_date", sa.Date(), nullable=True),
        sa.Column("earned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("redemption_order_id", sa.String(), nullable=True),
        sa.Column("square_discount_id", sa.String(), nullable=True),
        sa.Column("trace_id", sa.String(length=64), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revocation_reason", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "uq_loyalty_rewards_one_earned",
        "loyalty_rewards",
        ["merchant_id", "square_customer_id", "offer_id"],
        unique=True,
        postgresql_where=sa.text("status = 'earned'"),
        sqlite_where=sa.text("status = 'earned'"),
    )
    op.create_index("ix_loyalty_rewards_customer", "loyalty_rewards", ["merchant_id", "square_customer_id"])
    op.create_index(
        "ix_loyalty_rewards_status_expiry", "loyalty_rewards", ["merchant_id", "status", "expires_at"]
    )
    op.create_index("ix_loyalty_rewards_square_discount_id", "loyalty_rewards", ["square_discount_id"])

    op.create_table(
        "loyalty_reward_allocations",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("reward_id", UUID, sa.ForeignKey("loyalty_rewards.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "purchase_event_id",
            UUID,
            sa.ForeignKey("loyalty_purchase_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("reward_id", "purchase_event_id", name="uq_loyalty_allocations_reward_event"),
        sa.CheckConstraint("quantity > 0", name="ck_loyalty_allocations_quantity_positive"),
    )
    op.create_index(
        "ix_loyalty_reward_allocations_purchase_event_id", "loyalty_reward_allocations", ["purchase_event_id"]
    )

    op.create_table(
        "loyalty_customer_offer_locks",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("merchant_id", UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("square_customer_id", sa.String(), nullable=False),
        sa.Column("offer_id", UUID, sa.ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("last_evaluated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "merchant_id", "square_customer_id", "offer_id", name="uq_loyalty_locks_merchant_customer_offer"
        ),
    )

    op.create_table(
        "loyalty_audit_events",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("merchant_id", UUID, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("action", audit_action, nullable=False),
        sa.Column("reward_id", UUID, sa.ForeignKey("loyalty_rewards.id"), nullable=True),
        sa.Column("offer_id", UUID, sa.ForeignKey("loyalty_offers.id"), nullable=True),
        sa.Column("square_customer_id", sa.String(), nullable=True),
        sa.Column("square_order_id", sa.String(), nullable=True),
        sa.Column("trace_id", sa.String(length=64), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_loyalty_audit_events_merchant_id", "loyalty_audit_events", ["merchant_id"])
    op.create_index("ix_loyalty_audit_events_reward_id", "loyalty_audit_events", ["reward_id"])


def downgrade() -> None:
    op.drop_table("loyalty_audit_events")
    op.drop_table("loyalty_customer_offer_locks")
    op.drop_table("loyalty_reward_allocations")
    op.drop_table("loyalty_rewards")
    op.drop_table("loyalty_purchase_events")
    op.drop_table("loyalty_qualifying_variations")
    op.drop_table("loyalty_offers")
    op.drop_table("webhook_events")
    op.drop_table("subscribers")
    op.drop_table("user_merchants")
    op.drop_table("users")
    op.drop_table("merchants")

    bind = op.get_bind()
    for enum in (audit_action, reward_status, webhook_status, merchant_status):
        enum.drop(bind, checkfirst=True)
