"""Keep merchant access in step with their subscription to the service."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.models.merchant import Merchant, MerchantSubscriptionStatus
from loyalty_engine_api.models.subscriber import Subscriber
from loyalty_engine_api.models.user import User, UserMerchant

SQUARE_STATUS_MAP: dict[str, MerchantSubscriptionStatus] = {
    "ACTIVE": MerchantSubscriptionStatus.ACTIVE,
    "CANCELED": MerchantSubscriptionStatus.CANCELLED,
    "PAUSED": MerchantSubscriptionStatus.SUSPENDED,
    "DEACTIVATED": MerchantSubscriptionStatus.CANCELLED,
}

_log = logger.bind(category="SUBSCRIPTION")


def map_square_status(status: str | None) -> MerchantSubscriptionStatus | None:
    if not status:
        return None
    return SQUARE_STATUS_MAP.get(status.upper())


class SubscriptionBridge:
    """Applies subscription state to the linked merchant row.

    Changes are staged on the session; the caller commits.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def resolve_merchant_id(self, subscriber: Subscriber) -> UUID | None:
        """Direct link first, then the primary merchant of the user sharing the subscriber's email."""

        if subscriber.merchant_id is not None:
            return subscriber.merchant_id
        if not subscriber.email:
            return None

        stmt = (
            select(UserMerchant.merchant_id)
            .join(User, User.id == UserMerchant.user_id)
            .where(
                func.lower(User.email) == subscriber.email.strip().lower(),
                UserMerchant.is_primary.is_(True),
            )
            .limit(1)
        )
        merchant_id = (await self._db.execute(stmt)).scalar_one_or_none()
        if merchant_id is not None:
            subscriber.merchant_id = merchant_id
            _log.info(
                "Linked subscriber to merchant by email",
                subscriber_id=str(subscriber.id),
                merchant_id=str(merchant_id),
            )
        return merchant_id

    async def activate_merchant(self, merchant_id: UUID) -> Merchant | None:
        return await self._apply(merchant_id, MerchantSubscriptionStatus.ACTIVE, is_active=True)

    async def suspend_merchant(self, merchant_id: UUID) -> Merchant | None:
        return await self._apply(merchant_id, MerchantSubscriptionStatus.SUSPENDED, is_active=False)

    async def cancel_merchant(self, merchant_id: UUID) -> Merchant | None:
        return await self._apply(merchant_id, MerchantSubscriptionStatus.CANCELLED, is_active=False)

    async def apply_status(self, merchant_id: UUID, status: MerchantSubscriptionStatus) -> Merchant | None:
        if status == MerchantSubscriptionStatus.ACTIVE:
            return await self.activate_merchant(merchant_id)
        if status == MerchantSubscriptionStatus.SUSPENDED:
            return await self.suspend_merchant(merchant_id)
        if status == MerchantSubscriptionStatus.CANCELLED:
            return await self.cancel_merchant(merchant_id)
        return await self._apply(merchant_id, status, is_active=True)

    async def _apply(
        self,
        merchant_id: UUID,
        status: MerchantSubscriptionStatus,
        *,
        is_active: bool,
    ) -> Merchant | None:
        merchant = await self._db.get(Merchant, merchant_id)
        if merchant is None:
            _log.warning("Subscription change for unknown merchant", merchant_id=str(merchant_id))
            return None
        if merchant.subscription_status == MerchantSubscriptionStatus.PLATFORM_OWNER:
            if not is_active:
                _log.info("Platform owner access left unchanged", merchant_id=str(merchant_id), requested=status.value)
            return merchant

        previous = merchant.subscription_status
        merchant.subscription_status = status
        merchant.is_active = is_active
        merchant.updated_at = datetime.now(timezone.utc)
        _log.info(
            "Merchant subscription status changed",
            merchant_id=str(merchant_id),
            previous=previous.value if previous else None,
            status=status.value,
        )
        return merchant


__all__ = ["SQUARE_STATUS_MAP", "SubscriptionBridge", "map_square_status"]
