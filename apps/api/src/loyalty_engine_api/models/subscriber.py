from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, String, func
from sqlalchemy.dialects.postgresql import UUID

from loyalty_engine_api.db.base import Base


class Subscriber(Base):
    """Billing-side record of a merchant's subscription to the service."""

    __tablename__ = "subscribers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String, nullable=False, index=True)
    square_customer_id = Column(String, nullable=True, index=True)
    square_subscription_id = Column(String, nullable=True, unique=True)
    subscription_status = Column(String(length=32), nullable=False, default="trial", server_default="trial")
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
