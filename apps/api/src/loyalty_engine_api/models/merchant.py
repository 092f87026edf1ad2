from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Enum as SqlEnum, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from loyalty_engine_api.db.base import Base


class MerchantSubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PLATFORM_OWNER = "platform_owner"


class Merchant(Base):
    """A Square seller account connected to the service."""

    __tablename__ = "merchants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    business_name = Column(String, nullable=False)
    square_merchant_id = Column(String, nullable=False, unique=True, index=True)
    square_access_token = Column(Text, nullable=True)
    subscription_status = Column(
        SqlEnum(
            MerchantSubscriptionStatus,
            name="merchant_subscription_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=MerchantSubscriptionStatus.TRIAL,
    )
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
