"""Frequent-buyer loyalty models: offers, the purchase ledger, and reward instances."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from loyalty_engine_api.db.base import Base


class LoyaltyRewardStatus(str, Enum):
    """Reward lifecycle states. Every reward starts as ``earned``."""

    EARNED = "earned"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    REVOKED = "revoked"


class LoyaltyAuditAction(str, Enum):
    REWARD_EARNED = "reward_earned"
    REWARD_REDEEMED = "reward_redeemed"
    REWARD_EXPIRED = "reward_expired"
    REWARD_REVOKED = "reward_revoked"
    REWARD_EXPIRY_CORRECTED = "reward_expiry_corrected"


class LoyaltyOrderResult(str, Enum):
    """Outcome recorded for every completed order the engine looked at."""

    QUALIFYING = "qualifying"
    NON_QUALIFYING = "non_qualifying"
    NO_CUSTOMER = "no_customer"
    NO_OFFERS = "no_offers"


class LoyaltyOffer(Base):
    """Merchant-scoped rule: buy ``required_quantity`` within ``window_months`` to earn a reward."""

    __tablename__ = "loyalty_offers"
    __table_args__ = (
        CheckConstraint("required_quantity > 0", name="ck_loyalty_offers_required_positive"),
        CheckConstraint("reward_quantity > 0", name="ck_loyalty_offers_reward_positive"),
        CheckConstraint("window_months > 0", name="ck_loyalty_offers_window_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    offer_name = Column(String, nullable=False)
    brand_name = Column(String, nullable=True)
    size_group = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    required_quantity = Column(Integer, nullable=False)
    reward_quantity = Column(Integer, nullable=False, default=1, server_default="1")
    window_months = Column(Integer, nullable=False, default=12, server_default="12")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    variations = relationship("LoyaltyQualifyingVariation", back_populates="offer", lazy="selectin")


class LoyaltyQualifyingVariation(Base):
    __tablename__ = "loyalty_qualifying_variations"
    __table_args__ = (
        UniqueConstraint("merchant_id", "offer_id", "variation_id", name="uq_loyalty_variations_offer_variation"),
        Index("ix_loyalty_variations_merchant_variation", "merchant_id", "variation_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False)
    variation_id = Column(String, nullable=False)
    item_name = Column(String, nullable=True)
    variation_name = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    offer = relationship("LoyaltyOffer", back_populates="variations")


class LoyaltyPurchaseEvent(Base):
    """Append-only ledger row for a qualifying sale (positive) or its refund (negative)."""

    __tablename__ = "loyalty_purchase_events"
    __table_args__ = (
        UniqueConstraint("merchant_id", "idempotency_key", name="uq_loyalty_purchase_events_idempotency"),
        Index(
            "ix_loyalty_purchase_events_customer_offer",
            "merchant_id",
            "square_customer_id",
            "offer_id",
            "window_end_date",
        ),
        Index("ix_loyalty_purchase_events_order", "merchant_id", "square_order_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id"), nullable=False)
    square_customer_id = Column(String, nullable=False)
    square_order_id = Column(String, nullable=False)
    square_location_id = Column(String, nullable=True)
    variation_id = Column(String, nullable=False)
    line_item_uid = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=True)
    purchased_at = Column(DateTime(timezone=True), nullable=False)
    window_start_date = Column(Date, nullable=False)
    window_end_date = Column(Date, nullable=False)
    is_refund = Column(Boolean, nullable=False, default=False, server_default="false")
    refund_of_event_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_purchase_events.id"), nullable=True)
    square_refund_id = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=False)
    customer_source = Column(String(length=32), nullable=True)
    trace_id = Column(String(length=64), nullable=True)
    recorded_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class LoyaltyReward(Base):
    """Reward instance; status moves only through the lifecycle manager."""

    __tablename__ = "loyalty_rewards"
    __table_args__ = (
        Index(
            "uq_loyalty_rewards_one_earned",
            "merchant_id",
            "square_customer_id",
            "offer_id",
            unique=True,
            postgresql_where=text("status = 'earned'"),
            sqlite_where=text("status = 'earned'"),
        ),
        Index("ix_loyalty_rewards_customer", "merchant_id", "square_customer_id"),
        Index("ix_loyalty_rewards_status_expiry", "merchant_id", "status", "expires_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id"), nullable=False)
    square_customer_id = Column(String, nullable=False)
    status = Column(
        SqlEnum(
            LoyaltyRewardStatus,
            name="loyalty_reward_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=LoyaltyRewardStatus.EARNED,
    )
    progress_quantity = Column(Integer, nullable=False)
    window_start_date = Column(Date, nullable=True)
    window_end_date = Column(Date, nullable=True)
    earned_at = Column(DateTime(timezone=True), nullable=False)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    redemption_order_id = Column(String, nullable=True)
    square_discount_id = Column(String, nullable=True, index=True)
    trace_id = Column(String(length=64), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revocation_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    allocations = relationship("LoyaltyRewardAllocation", back_populates="reward", lazy="selectin")


class LoyaltyRewardAllocation(Base):
    """Units of a purchase event consumed by a reward."""

    __tablename__ = "loyalty_reward_allocations"
    __table_args__ = (
        UniqueConstraint("reward_id", "purchase_event_id", name="uq_loyalty_allocations_reward_event"),
        CheckConstraint("quantity > 0", name="ck_loyalty_allocations_quantity_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_rewards.id", ondelete="CASCADE"), nullable=False)
    purchase_event_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_purchase_events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quantity = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    reward = relationship("LoyaltyReward", back_populates="allocations")


class LoyaltyCustomerOfferLock(Base):
    """Anchor row locked by the earn path for one (merchant, customer, offer) tuple."""

    __tablename__ = "loyalty_customer_offer_locks"
    __table_args__ = (
        UniqueConstraint(
            "merchant_id", "square_customer_id", "offer_id", name="uq_loyalty_locks_merchant_customer_offer"
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    square_customer_id = Column(String, nullable=False)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False)
    last_evaluated_at = Column(DateTime(timezone=True), nullable=True)


class LoyaltyAuditEvent(Base):
    __tablename__ = "loyalty_audit_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(
        SqlEnum(
            LoyaltyAuditAction,
            name="loyalty_audit_action",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    reward_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_rewards.id"), nullable=True, index=True)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id"), nullable=True)
    square_customer_id = Column(String, nullable=True)
    square_order_id = Column(String, nullable=True)
    trace_id = Column(String(length=64), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class LoyaltyProcessedOrder(Base):
    """One row per completed order, including orders with no customer or no qualifying lines."""

    __tablename__ = "loyalty_processed_orders"
    __table_args__ = (
        UniqueConstraint("merchant_id", "square_order_id", name="uq_loyalty_processed_orders_order"),
        Index("ix_loyalty_processed_orders_result", "merchant_id", "result_type", "processed_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    square_order_id = Column(String, nullable=False)
    square_customer_id = Column(String, nullable=True)
    result_type = Column(
        SqlEnum(
            LoyaltyOrderResult,
            name="loyalty_order_result",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    qualifying_items = Column(Integer, nullable=False, default=0, server_default="0")
    total_line_items = Column(Integer, nullable=False, default=0, server_default="0")
    customer_source = Column(String, nullable=True)
    source = Column(String, nullable=False, default="WEBHOOK", server_default="WEBHOOK")
    trace_id = Column(String(length=64), nullable=True)
    processed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
