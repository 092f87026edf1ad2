"""Resolve the Square customer behind an order.

Strategies run in a fixed priority order and the first hit wins. A strategy that
errors is logged and treated as a miss so the next one still runs.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Sequence
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.models.loyalty import LoyaltyReward, LoyaltyRewardStatus
from loyalty_engine_api.observability.loyalty import get_loyalty_store
from loyalty_engine_api.services.loyalty.audit import LoyaltyLogCategory, loyalty_logger
from loyalty_engine_api.services.square.client import SquareApiError, SquareClient

_PHONE_STRIP = re.compile(r"[^\d+]")


class IdentificationStrategy(str, Enum):
    ORDER_CUSTOMER_ID = "order_customer_id"
    TENDER_CUSTOMER_ID = "tender_customer_id"
    LOYALTY_API = "loyalty_api"
    ORDER_REWARDS = "order_rewards"
    FULFILLMENT_RECIPIENT = "fulfillment_recipient"
    LOYALTY_DISCOUNT = "loyalty_discount"
    NONE = "none"


IDENTIFICATION_CHAIN: tuple[IdentificationStrategy, ...] = (
    IdentificationStrategy.ORDER_CUSTOMER_ID,
    IdentificationStrategy.TENDER_CUSTOMER_ID,
    IdentificationStrategy.LOYALTY_API,
    IdentificationStrategy.ORDER_REWARDS,
    IdentificationStrategy.FULFILLMENT_RECIPIENT,
    IdentificationStrategy.LOYALTY_DISCOUNT,
)


@dataclass(slots=True, frozen=True)
class IdentificationResult:
    customer_id: str | None
    strategy: IdentificationStrategy
    attempted: tuple[IdentificationStrategy, ...] = ()

    @property
    def success(self) -> bool:
        return self.customer_id is not None


def normalize_phone(value: str) -> str:
    return _PHONE_STRIP.sub("", value)


def _recipient(fulfillment: Mapping[str, Any]) -> Mapping[str, Any] | None:
    for key in ("pickup_details", "shipment_details", "delivery_details"):
        details = fulfillment.get(key) or {}
        recipient = details.get("recipient")
        if recipient:
            return recipient
    return None


class CustomerIdentifier:
    """Chain-of-responsibility over :data:`IDENTIFICATION_CHAIN`."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        merchant_id: UUID,
        client: SquareClient | None,
        chain: Sequence[IdentificationStrategy] = IDENTIFICATION_CHAIN,
    ) -> None:
        self._db = session
        self._merchant_id = merchant_id
        self._client = client
        self._chain = tuple(chain)
        self._handlers: dict[IdentificationStrategy, Callable[[Mapping[str, Any]], Awaitable[str | None]]] = {
            IdentificationStrategy.ORDER_CUSTOMER_ID: self._from_order_customer,
            IdentificationStrategy.TENDER_CUSTOMER_ID: self._from_tenders,
            IdentificationStrategy.LOYALTY_API: self._from_loyalty_events,
            IdentificationStrategy.ORDER_REWARDS: self._from_order_rewards,
            IdentificationStrategy.FULFILLMENT_RECIPIENT: self._from_fulfillment_recipient,
            IdentificationStrategy.LOYALTY_DISCOUNT: self._from_loyalty_discount,
        }

    async def identify(self, order: Mapping[str, Any], *, trace_id: str | None = None) -> IdentificationResult:
        order_id = order.get("id")
        log = loyalty_logger(
            LoyaltyLogCategory.CUSTOMER,
            merchant_id=str(self._merchant_id),
            order_id=order_id,
            trace_id=trace_id,
        )
        attempted: list[IdentificationStrategy] = []
        for strategy in self._chain:
            attempted.append(strategy)
            try:
                customer_id = await self._handlers[strategy](order)
            except (SquareApiError, SQLAlchemyError) as exc:
                log.warning("Identification strategy failed", strategy=strategy.value, error=str(exc))
                continue
            if customer_id:
                get_loyalty_store().record_identification(strategy.value)
                log.info("Customer identified", strategy=strategy.value, customer_id=customer_id)
                return IdentificationResult(customer_id, strategy, tuple(attempted))

        get_loyalty_store().record_identification(IdentificationStrategy.NONE.value)
        log.info("Customer not identified", attempted=[item.value for item in attempted])
        return IdentificationResult(None, IdentificationStrategy.NONE, tuple(attempted))

    async def _from_order_customer(self, order: Mapping[str, Any]) -> str | None:
        return order.get("customer_id") or None

    async def _from_tenders(self, order: Mapping[str, Any]) -> str | None:
        for tender in order.get("tenders") or []:
            if tender.get("customer_id"):
                return tender["customer_id"]
        return None

    async def _search_order_loyalty_events(self, order_id: str, limit: int) -> list[dict[str, Any]]:
        if self._client is None or not order_id:
            return []
        return await self._client.search_loyalty_events(
            {"filter": {"order_filter": {"order_id": order_id}}}, limit=limit
        )

    async def _account_customer(self, account_id: str | None) -> str | None:
        if self._client is None or not account_id:
            return None
        account = await self._client.get_loyalty_account(account_id)
        return (account or {}).get("customer_id") or None

    async def _from_loyalty_events(self, order: Mapping[str, Any]) -> str | None:
        events = await self._search_order_loyalty_events(order.get("id"), limit=1)
        if not events:
            return None
        return await self._account_customer(events[0].get("loyalty_account_id"))

    async def _from_order_rewards(self, order: Mapping[str, Any]) -> str | None:
        if not order.get("rewards"):
            return None
        for event in await self._search_order_loyalty_events(order.get("id"), limit=10):
            customer_id = await self._account_customer(event.get("loyalty_account_id"))
            if customer_id:
                return customer_id
        return None

    async def _from_fulfillment_recipient(self, order: Mapping[str, Any]) -> str | None:
        phone: str | None = None
        email: str | None = None
        for fulfillment in order.get("fulfillments") or []:
            recipient = _recipient(fulfillment)
            if not recipient:
                continue
            if recipient.get("customer_id"):
                return recipient["customer_id"]
            phone = phone or recipient.get("phone_number")
            email = email or recipient.get("email_address")

        if self._client is None:
            return None
        if phone:
            customers = await self._client.search_customers_by_phone(normalize_phone(phone))
            if customers:
                return customers[0].get("id")
        if email:
            customers = await self._client.search_customers_by_email(email.strip().lower())
            if customers:
                return customers[0].get("id")
        return None

    async def _from_loyalty_discount(self, order: Mapping[str, Any]) -> str | None:
        discount_ids = [
            discount.get("catalog_object_id")
            for discount in order.get("discounts") or []
            if discount.get("catalog_object_id")
        ]
        if not discount_ids:
            return None
        stmt = (
            select(LoyaltyReward.square_customer_id)
            .where(
                LoyaltyReward.merchant_id == self._merchant_id,
                LoyaltyReward.square_discount_id.in_(discount_ids),
                or_(
                    LoyaltyReward.status == LoyaltyRewardStatus.EARNED,
                    LoyaltyReward.redemption_order_id == order.get("id"),
                ),
            )
            .limit(1)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()


__all__ = [
    "CustomerIdentifier",
    "IDENTIFICATION_CHAIN",
    "IdentificationResult",
    "IdentificationStrategy",
    "normalize_phone",
]
