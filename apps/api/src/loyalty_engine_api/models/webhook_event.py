from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import JSON, Column, DateTime, Enum as SqlEnum, ForeignKey, String, Text, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.dialects.postgresql import UUID

from loyalty_engine_api.db.base import Base


class WebhookEventStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    IGNORED = "ignored"


class WebhookEvent(Base):
    """Square webhook delivery, unique per Square event id."""

    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    square_event_id = Column(String, nullable=False, unique=True)
    event_type = Column(String, nullable=False)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="SET NULL"), nullable=True)
    status = Column(
        SqlEnum(
            WebhookEventStatus,
            name="webhook_event_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=WebhookEventStatus.PROCESSING,
    )
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)


@dataclass(slots=True)
class RecordedWebhookEvent:
    event: WebhookEvent
    created: bool


async def record_webhook_event(
    session: AsyncSession,
    *,
    square_event_id: str,
    event_type: str,
    merchant_id: PyUUID | None = None,
) -> RecordedWebhookEvent:
    """Claim a Square event id. A previously failed delivery may be claimed again."""

    existing = (
        await session.execute(select(WebhookEvent).where(WebhookEvent.square_event_id == square_event_id))
    ).scalar_one_or_none()
    if existing is not None:
        if existing.status != WebhookEventStatus.FAILED:
            return RecordedWebhookEvent(event=existing, created=False)
        existing.status = WebhookEventStatus.PROCESSING
        existing.error_message = None
        await session.flush()
        return RecordedWebhookEvent(event=existing, created=True)

    event = WebhookEvent(
        square_event_id=square_event_id,
        event_type=event_type,
        merchant_id=merchant_id,
        status=WebhookEventStatus.PROCESSING,
    )
    session.add(event)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        found = (
            await session.execute(select(WebhookEvent).where(WebhookEvent.square_event_id == square_event_id))
        ).scalar_one_or_none()
        if found is None:
            raise
        return RecordedWebhookEvent(event=found, created=False)
    return RecordedWebhookEvent(event=event, created=True)
