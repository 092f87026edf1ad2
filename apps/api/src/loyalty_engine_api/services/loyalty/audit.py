"""Loyalty log categories, trace ids, and the persisted audit trail."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.models.loyalty import LoyaltyAuditAction, LoyaltyAuditEvent, LoyaltyReward


class LoyaltyLogCategory(str, Enum):
    PURCHASE = "LOYALTY:PURCHASE"
    REWARD = "LOYALTY:REWARD"
    REDEMPTION = "LOYALTY:REDEMPTION"
    REFUND = "LOYALTY:REFUND"
    SQUARE_API = "LOYALTY:SQUARE_API"
    CUSTOMER = "LOYALTY:CUSTOMER"
    WEBHOOK = "LOYALTY:WEBHOOK"


def loyalty_logger(category: LoyaltyLogCategory, **context: Any):
    return logger.bind(category=category.value, **context)


def new_trace_id() -> str:
    """Correlation id threaded through one order's loyalty processing."""

    return uuid.uuid4().hex


def record_audit_event(
    session: AsyncSession,
    *,
    merchant_id: UUID,
    action: LoyaltyAuditAction,
    reward: LoyaltyReward | None = None,
    offer_id: UUID | None = None,
    customer_id: str | None = None,
    order_id: str | None = None,
    trace_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> LoyaltyAuditEvent:
    """Stage an audit row in the caller's transaction."""

    event = LoyaltyAuditEvent(
        merchant_id=merchant_id,
        action=action,
        reward_id=reward.id if reward is not None else None,
        offer_id=offer_id or (reward.offer_id if reward is not None else None),
        square_customer_id=customer_id or (reward.square_customer_id if reward is not None else None),
        square_order_id=order_id,
        trace_id=trace_id or (reward.trace_id if reward is not None else None),
        details=details,
    )
    session.add(event)
    return event


__all__ = ["LoyaltyLogCategory", "loyalty_logger", "new_trace_id", "record_audit_event"]
