"""Loyalty handling for Square order, payment, and refund webhooks."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, MutableMapping
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.core.security import TokenEncryptionError
from loyalty_engine_api.services.loyalty.audit import LoyaltyLogCategory, loyalty_logger, new_trace_id
from loyalty_engine_api.services.loyalty.identification import CustomerIdentifier
from loyalty_engine_api.services.loyalty.order_cache import OrderCacheEntry, OrderProcessingCache
from loyalty_engine_api.services.loyalty.order_intake import LoyaltyOrderIntake
from loyalty_engine_api.services.square.client import SquareApiError, SquareClient
from loyalty_engine_api.services.webhooks.context import WebhookContext

SessionFactory = Callable[[], AsyncSession]
ClientFactory = Callable[[AsyncSession, UUID], Awaitable[SquareClient | None]]
IdentifierFactory = Callable[[AsyncSession, UUID, SquareClient | None], CustomerIdentifier]
IntakeFactory = Callable[[AsyncSession, UUID], LoyaltyOrderIntake]

_ORDER_KEYS = ("order", "order_created", "order_updated", "order_fulfillment_updated")


async def merchant_square_client(session: AsyncSession, merchant_id: UUID) -> SquareClient | None:
    """Default client factory; a merchant without a usable token processes from payloads only."""

    try:
        return await SquareClient.for_merchant(session, merchant_id)
    except (SquareApiError, TokenEncryptionError) as exc:
        loyalty_logger(LoyaltyLogCategory.SQUARE_API, merchant_id=str(merchant_id)).warning(
            "Square client unavailable", error=str(exc)
        )
        return None


def _default_identifier(session: AsyncSession, merchant_id: UUID, client: SquareClient | None) -> CustomerIdentifier:
    return CustomerIdentifier(session, merchant_id=merchant_id, client=client)


def _default_intake(session: AsyncSession, merchant_id: UUID) -> LoyaltyOrderIntake:
    return LoyaltyOrderIntake(session, merchant_id=merchant_id)


def extract_order(data: Mapping[str, Any]) -> Mapping[str, Any]:
    for key in _ORDER_KEYS:
        value = data.get(key)
        if isinstance(value, Mapping):
            return value
    return data


class OrderWebhookProcessor:
    """Runs identification and the purchase ledger for order-related webhooks.

    Square sends several deliveries per sale. The injected ``cache`` remembers the
    customer resolved for an order so later deliveries reuse it, and remembers
    whether the order has already been credited.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        cache: OrderProcessingCache,
        client_factory: ClientFactory = merchant_square_client,
        identifier_factory: IdentifierFactory | None = None,
        intake_factory: IntakeFactory | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._client_factory = client_factory
        self._identifier_factory = identifier_factory or _default_identifier
        self._intake_factory = intake_factory or _default_intake
        self._order_locks: MutableMapping[str, asyncio.Lock] = {}
        self._order_lock_holders: dict[str, int] = {}

    @asynccontextmanager
    async def _order_guard(self, order_id: str, merchant_id: UUID) -> AsyncIterator[None]:
        """Serialize loyalty work for one order inside this process."""

        key = OrderProcessingCache.key(order_id, merchant_id)
        lock = self._order_locks.setdefault(key, asyncio.Lock())
        self._order_lock_holders[key] = self._order_lock_holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._order_lock_holders[key] -= 1
            if not self._order_lock_holders[key]:
                del self._order_lock_holders[key]
                self._order_locks.pop(key, None)

    async def handle_order_event(self, context: WebhookContext) -> dict[str, Any]:
        """``order.created`` and ``order.updated``."""

        order = extract_order(context.data)
        order_id = order.get("id") or order.get("order_id") or context.entity_id
        return await self._process_order_webhook(context, order_id, fallback={**order, "id": order_id})

    async def handle_fulfillment_updated(self, context: WebhookContext) -> dict[str, Any]:
        """``order.fulfillment.updated`` carries only the order id and state."""

        summary = extract_order(context.data)
        order_id = summary.get("order_id") or summary.get("id") or context.entity_id
        return await self._process_order_webhook(context, order_id, fallback=None)

    async def handle_payment_event(self, context: WebhookContext) -> dict[str, Any]:
        payment = context.data.get("payment") or context.data
        result: dict[str, Any] = {"event_type": context.event_type, "payment_id": payment.get("id")}
        if payment.get("status") != "COMPLETED":
            result["skipped"] = "payment_not_completed"
            return result
        order_id = payment.get("order_id")
        if not order_id or context.merchant_id is None:
            result["skipped"] = "missing_order_id"
            return result
        result["order_id"] = order_id

        entry = self._cache.get(order_id, context.merchant_id)
        if entry is not None and entry.customer_id and entry.points_awarded:
            result["skipped_by_cache"] = True
            return result

        async with self._session_factory() as session:
            client = await self._client_factory(session, context.merchant_id)
            try:
                order = await self._fetch_order(client, order_id, fallback=None)
                if order is None:
                    result["skipped"] = "order_unavailable"
                    return result
                result["order_state"] = order.get("state")
                if order.get("state") == "COMPLETED":
                    await self._process_loyalty(session, client, order, context.merchant_id, result)
            finally:
                if client is not None:
                    await client.aclose()
        return result

    async def handle_refund_event(self, context: WebhookContext) -> dict[str, Any]:
        refund = context.data.get("refund") or context.data
        result: dict[str, Any] = {"event_type": context.event_type, "refund_id": refund.get("id")}
        if refund.get("status") != "COMPLETED":
            result["skipped"] = "refund_not_completed"
            return result
        order_id = refund.get("order_id")
        if not order_id or context.merchant_id is None:
            result["skipped"] = "missing_order_id"
            return result
        result["order_id"] = order_id

        trace_id = new_trace_id()
        log = loyalty_logger(
            LoyaltyLogCategory.REFUND,
            merchant_id=str(context.merchant_id),
            order_id=order_id,
            refund_id=refund.get("id"),
            trace_id=trace_id,
        )
        async with self._session_factory() as session:
            client = await self._client_factory(session, context.merchant_id)
            try:
                order = await self._fetch_order(client, order_id, fallback={"id": order_id})
                intake = self._intake_factory(session, context.merchant_id)
                outcome = await intake.process_refund(refund, order, trace_id=trace_id)
                result["loyalty"] = outcome.as_dict()
            except Exception as exc:
                log.exception("Refund loyalty processing failed")
                result["loyalty_error"] = str(exc)
            finally:
                if client is not None:
                    await client.aclose()
        return result

    async def _process_order_webhook(
        self,
        context: WebhookContext,
        order_id: str | None,
        *,
        fallback: Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        result: dict[str, Any] = {"event_type": context.event_type, "order_id": order_id}
        if not order_id or context.merchant_id is None:
            result["skipped"] = "missing_order_id"
            return result

        async with self._session_factory() as session:
            client = await self._client_factory(session, context.merchant_id)
            try:
                order = await self._fetch_order(client, order_id, fallback=fallback)
                if order is None:
                    result["skipped"] = "order_unavailable"
                    return result
                result["order_state"] = order.get("state")
                if order.get("state") == "COMPLETED":
                    await self._process_loyalty(session, client, order, context.merchant_id, result)
                elif self._cache.get(order_id, context.merchant_id) is None:
                    self._cache.set(order_id, context.merchant_id, OrderCacheEntry())
            finally:
                if client is not None:
                    await client.aclose()
        return result

    async def _fetch_order(
        self,
        client: SquareClient | None,
        order_id: str,
        *,
        fallback: Mapping[str, Any] | None,
    ) -> Mapping[str, Any] | None:
        if client is None:
            return fallback
        try:
            order = await client.get_order(order_id)
        except SquareApiError as exc:
            loyalty_logger(LoyaltyLogCategory.SQUARE_API, order_id=order_id).warning(
                "Order fetch failed; using webhook payload", error=str(exc), status=exc.status
            )
            return fallback
        return order or fallback

    async def _process_loyalty(
        self,
        session: AsyncSession,
        client: SquareClient | None,
        order: Mapping[str, Any],
        merchant_id: UUID,
        result: dict[str, Any],
    ) -> None:
        async with self._order_guard(order.get("id") or "", merchant_id):
            await self._process_loyalty_once(session, client, order, merchant_id, result)

    async def _process_loyalty_once(
        self,
        session: AsyncSession,
        client: SquareClient | None,
        order: Mapping[str, Any],
        merchant_id: UUID,
        result: dict[str, Any],
    ) -> None:
        order_id = order.get("id")
        trace_id = new_trace_id()
        result["trace_id"] = trace_id
        log = loyalty_logger(
            LoyaltyLogCategory.WEBHOOK,
            merchant_id=str(merchant_id),
            order_id=order_id,
            trace_id=trace_id,
        )

        try:
            entry = self._cache.get(order_id, merchant_id)
            if entry is not None and entry.customer_id:
                customer_id: str | None = entry.customer_id
                customer_source = "cached"
                log.debug("Using cached customer", customer_id=customer_id)
            else:
                if entry is not None:
                    log.info("Cache entry present; re-running identification - no customer in cache")
                identifier = self._identifier_factory(session, merchant_id, client)
                identification = await identifier.identify(order, trace_id=trace_id)
                customer_id = identification.customer_id
                customer_source = identification.strategy.value

            if entry is not None and entry.points_awarded and customer_id:
                result["skipped_by_cache"] = True
                return

            intake = self._intake_factory(session, merchant_id)
            outcome = await intake.process_order(
                order, customer_id=customer_id, customer_source=customer_source, trace_id=trace_id
            )
            if entry is None or not entry.redemption_checked:
                outcome.rewards_redeemed.extend(await intake.detect_redemptions(order, trace_id=trace_id))

            self._cache.set(
                order_id,
                merchant_id,
                OrderCacheEntry(
                    customer_id=customer_id,
                    points_awarded=bool(customer_id),
                    redemption_checked=True,
                ),
            )
            result["loyalty"] = outcome.as_dict()
        except Exception as exc:
            log.exception("Order loyalty processing failed")
            result["loyalty_error"] = str(exc)


__all__ = ["OrderWebhookProcessor", "WebhookContext", "extract_order", "merchant_square_client"]
