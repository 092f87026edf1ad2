"""Square subscription, invoice, and customer webhooks for the service's own billing."""

from __future__ import annotations

from typing import Any, Callable

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.models.merchant import MerchantSubscriptionStatus
from loyalty_engine_api.models.subscriber import Subscriber
from loyalty_engine_api.services.billing.subscription_bridge import SubscriptionBridge, map_square_status
from loyalty_engine_api.services.webhooks.context import WebhookContext

_log = logger.bind(category="SUBSCRIPTION")


class SubscriptionWebhookHandler:
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def handle(self, context: WebhookContext) -> dict[str, Any]:
        event_type = context.event_type
        data = context.data
        result: dict[str, Any] = {"event_type": event_type}

        if event_type == "subscription.created":
            subscription = data.get("subscription") or {}
            target = MerchantSubscriptionStatus.ACTIVE
            subscription_id, customer_id = subscription.get("id"), subscription.get("customer_id")
        elif event_type == "subscription.updated":
            subscription = data.get("subscription") or {}
            target = map_square_status(subscription.get("status"))
            subscription_id, customer_id = subscription.get("id"), subscription.get("customer_id")
        elif event_type in {"invoice.payment_made", "invoice.payment_failed"}:
            invoice = data.get("invoice") or {}
            target = (
                MerchantSubscriptionStatus.ACTIVE
                if event_type == "invoice.payment_made"
                else MerchantSubscriptionStatus.SUSPENDED
            )
            subscription_id = invoice.get("subscription_id")
            customer_id = (invoice.get("primary_recipient") or {}).get("customer_id")
        elif event_type == "customer.deleted":
            customer = data.get("customer") or {}
            target = MerchantSubscriptionStatus.CANCELLED
            subscription_id, customer_id = None, customer.get("id") or context.entity_id
        else:
            result["skipped"] = "unsupported_event"
            return result

        if target is None:
            result["skipped"] = "unmapped_status"
            return result

        async with self._session_factory() as session:
            subscriber = await _find_subscriber(session, subscription_id=subscription_id, customer_id=customer_id)
            if subscriber is None:
                _log.info(
                    "No subscriber for subscription webhook",
                    event_type=event_type,
                    subscription_id=subscription_id,
                    customer_id=customer_id,
                )
                result["skipped"] = "subscriber_not_found"
                return result

            if subscription_id and not subscriber.square_subscription_id:
                subscriber.square_subscription_id = subscription_id
            subscriber.subscription_status = target.value

            bridge = SubscriptionBridge(session)
            merchant_id = await bridge.resolve_merchant_id(subscriber)
            if merchant_id is not None:
                merchant = await bridge.apply_status(merchant_id, target)
                result["merchant_id"] = str(merchant_id)
                result["merchant_status"] = merchant.subscription_status.value if merchant is not None else None
            else:
                result["skipped"] = "merchant_not_linked"
            await session.commit()

        result["subscriber_status"] = target.value
        return result


async def _find_subscriber(
    session: AsyncSession,
    *,
    subscription_id: str | None,
    customer_id: str | None,
) -> Subscriber | None:
    filters = []
    if subscription_id:
        filters.append(Subscriber.square_subscription_id == subscription_id)
    if customer_id:
        filters.append(Subscriber.square_customer_id == customer_id)
    if not filters:
        return None
    stmt = select(Subscriber).where(or_(*filters)).order_by(Subscriber.created_at.asc()).limit(1)
    return (await session.execute(stmt)).scalar_one_or_none()


__all__ = ["SubscriptionWebhookHandler"]
