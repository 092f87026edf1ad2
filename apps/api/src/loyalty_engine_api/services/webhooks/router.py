"""Dedupe Square webhook deliveries and dispatch them by event type."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.core.settings import settings
from loyalty_engine_api.models.merchant import Merchant
from loyalty_engine_api.models.webhook_event import WebhookEvent, WebhookEventStatus, record_webhook_event
from loyalty_engine_api.observability.loyalty import get_loyalty_store
from loyalty_engine_api.observability.tracing import loyalty_span
from loyalty_engine_api.services.loyalty.audit import LoyaltyLogCategory, loyalty_logger
from loyalty_engine_api.services.webhooks.context import WebhookContext
from loyalty_engine_api.services.webhooks.order_processor import OrderWebhookProcessor
from loyalty_engine_api.services.webhooks.subscription_handler import SubscriptionWebhookHandler

ORDER_EVENTS = frozenset({"order.created", "order.updated"})
FULFILLMENT_EVENTS = frozenset({"order.fulfillment.updated"})
PAYMENT_EVENTS = frozenset({"payment.created", "payment.updated"})
REFUND_EVENTS = frozenset({"refund.created", "refund.updated"})
SUBSCRIPTION_EVENTS = frozenset(
    {
        "subscription.created",
        "subscription.updated",
        "invoice.payment_made",
        "invoice.payment_failed",
        "customer.deleted",
    }
)


class WebhookEventRouter:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        order_processor: OrderWebhookProcessor,
        subscription_handler: SubscriptionWebhookHandler | None = None,
        *,
        ignored_event_types: frozenset[str] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._orders = order_processor
        self._subscriptions = subscription_handler or SubscriptionWebhookHandler(session_factory)
        self._ignored = (
            ignored_event_types
            if ignored_event_types is not None
            else settings.ignored_webhook_event_types
        )

    async def dispatch(self, context: WebhookContext) -> dict[str, Any] | None:
        """Route one event. Returns None for types nothing handles."""

        event_type = context.event_type
        if event_type in self._ignored:
            return None
        if event_type in ORDER_EVENTS:
            return await self._orders.handle_order_event(context)
        if event_type in FULFILLMENT_EVENTS:
            return await self._orders.handle_fulfillment_updated(context)
        if event_type in PAYMENT_EVENTS:
            return await self._orders.handle_payment_event(context)
        if event_type in REFUND_EVENTS:
            return await self._orders.handle_refund_event(context)
        if event_type in SUBSCRIPTION_EVENTS:
            return await self._subscriptions.handle(context)
        return None

    async def process(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Handle a raw Square delivery body exactly once per ``event_id``."""

        event_id = payload.get("event_id")
        event_type = payload.get("type") or ""
        log = loyalty_logger(LoyaltyLogCategory.WEBHOOK, event_id=event_id, event_type=event_type)
        store = get_loyalty_store()

        async with self._session_factory() as session:
            merchant_id = await _resolve_merchant(session, payload.get("merchant_id"))
            if event_id:
                recorded = await record_webhook_event(
                    session, square_event_id=event_id, event_type=event_type, merchant_id=merchant_id
                )
                await session.commit()
                if not recorded.created:
                    store.record_webhook(event_type, "duplicate")
                    log.info("Duplicate webhook delivery ignored", previous_status=recorded.event.status.value)
                    return {"status": "duplicate", "eventId": event_id}

        context = WebhookContext.from_square_payload(payload, merchant_id=merchant_id)
        try:
            with loyalty_span(
                "square.webhook", event_type=event_type, event_id=event_id, merchant_id=merchant_id
            ):
                result = await self.dispatch(context)
        except Exception as exc:
            log.exception("Webhook processing failed")
            await self._finish(event_id, WebhookEventStatus.FAILED, error=str(exc))
            store.record_webhook(event_type, "failed")
            raise

        status = WebhookEventStatus.IGNORED if result is None else WebhookEventStatus.COMPLETED
        await self._finish(event_id, status, result=result)
        store.record_webhook(event_type, status.value)
        log.info("Webhook processed", status=status.value, merchant_id=str(merchant_id) if merchant_id else None)
        return {"status": status.value, "eventId": event_id, "result": result}

    async def _finish(
        self,
        event_id: str | None,
        status: WebhookEventStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        if not event_id:
            return
        async with self._session_factory() as session:
            event = (
                await session.execute(select(WebhookEvent).where(WebhookEvent.square_event_id == event_id))
            ).scalar_one_or_none()
            if event is None:
                return
            event.status = status
            event.result = result
            event.error_message = error
            event.processed_at = datetime.now(timezone.utc)
            await session.commit()


async def _resolve_merchant(session: AsyncSession, square_merchant_id: str | None):
    if not square_merchant_id:
        return None
    stmt = select(Merchant.id).where(Merchant.square_merchant_id == square_merchant_id)
    return (await session.execute(stmt)).scalar_one_or_none()


__all__ = ["WebhookEventRouter", "ORDER_EVENTS", "PAYMENT_EVENTS", "REFUND_EVENTS", "SUBSCRIPTION_EVENTS"]
