"""Append-only purchase ledger writes (sales and compensating refunds)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.db.dialects import insert_ignoring_conflicts
from loyalty_engine_api.models.loyalty import LoyaltyOffer, LoyaltyPurchaseEvent
from loyalty_engine_api.services.loyalty.audit import LoyaltyLogCategory, loyalty_logger
from loyalty_engine_api.services.loyalty.errors import LoyaltyValidationError
from loyalty_engine_api.services.loyalty.windows import add_months


@dataclass(slots=True)
class RecordedPurchase:
    idempotency_key: str
    offer_id: UUID
    created: bool
    event_id: UUID | None = None


@dataclass(slots=True)
class ReturnLine:
    uid: str
    source_line_item_uid: str | None
    variation_id: str | None
    quantity: int
    return_uid: str | None = None
    source_order_id: str | None = None


@dataclass(slots=True)
class RecordedRefund:
    refund_id: str
    created_event_ids: list[UUID] = field(default_factory=list)
    refunded_event_ids: list[UUID] = field(default_factory=list)
    customer_ids: set[str] = field(default_factory=set)
    offer_ids: set[UUID] = field(default_factory=set)
    duplicates: int = 0


def purchase_idempotency_key(order_id: str, line_item_key: str, offer_id: UUID) -> str:
    return f"{order_id}:{line_item_key}:{offer_id}"


def refund_idempotency_key(scope: str, return_line_uid: str, offer_id: UUID) -> str:
    """``scope`` is the Square return uid when known, else the refund id."""

    return f"refund:{scope}:{return_line_uid}:{offer_id}"


class PurchaseLedger:
    """Writes ledger rows for one merchant. Rows are inserted, never updated."""

    def __init__(self, session: AsyncSession, *, merchant_id: UUID) -> None:
        if not merchant_id:
            raise LoyaltyValidationError("merchant_id is required")
        self._db = session
        self._merchant_id = merchant_id

    async def record_purchase(
        self,
        *,
        offer: LoyaltyOffer,
        customer_id: str,
        order_id: str,
        variation_id: str,
        quantity: int,
        purchased_at: datetime,
        line_item_uid: str | None = None,
        unit_price_cents: int | None = None,
        location_id: str | None = None,
        customer_source: str | None = None,
        trace_id: str | None = None,
    ) -> RecordedPurchase:
        if not customer_id or not order_id or not variation_id:
            raise LoyaltyValidationError("customer_id, order_id and variation_id are required")
        if quantity <= 0:
            raise LoyaltyValidationError("purchase quantity must be positive")

        key = purchase_idempotency_key(order_id, line_item_uid or variation_id, offer.id)
        purchase_date = purchased_at.date()
        window_end = add_months(purchase_date, offer.window_months)
        window_start = await self._window_start(customer_id, offer.id, purchase_date)
        event_id = uuid4()

        created = await insert_ignoring_conflicts(
            self._db,
            LoyaltyPurchaseEvent,
            {
                "id": event_id,
                "merchant_id": self._merchant_id,
                "offer_id": offer.id,
                "square_customer_id": customer_id,
                "square_order_id": order_id,
                "square_location_id": location_id,
                "variation_id": variation_id,
                "line_item_uid": line_item_uid,
                "quantity": quantity,
                "unit_price_cents": unit_price_cents,
                "purchased_at": purchased_at,
                "window_start_date": window_start,
                "window_end_date": window_end,
                "is_refund": False,
                "idempotency_key": key,
                "customer_source": customer_source,
                "trace_id": trace_id,
            },
            conflict_columns=("merchant_id", "idempotency_key"),
        )

        log = loyalty_logger(
            LoyaltyLogCategory.PURCHASE,
            merchant_id=str(self._merchant_id),
            customer_id=customer_id,
            order_id=order_id,
            offer_id=str(offer.id),
            trace_id=trace_id,
        )
        if created:
            log.info(
                "Purchase recorded",
                variation_id=variation_id,
                quantity=quantity,
                window_start_date=window_start.isoformat(),
                window_end_date=window_end.isoformat(),
            )
        else:
            log.debug("Duplicate purchase ignored", idempotency_key=key)
        return RecordedPurchase(
            idempotency_key=key,
            offer_id=offer.id,
            created=created,
            event_id=event_id if created else None,
        )

    async def _window_start(self, customer_id: str, offer_id: UUID, purchase_date: date) -> date:
        stmt = select(func.min(LoyaltyPurchaseEvent.window_start_date)).where(
            LoyaltyPurchaseEvent.merchant_id == self._merchant_id,
            LoyaltyPurchaseEvent.square_customer_id == customer_id,
            LoyaltyPurchaseEvent.offer_id == offer_id,
            LoyaltyPurchaseEvent.is_refund.is_(False),
            LoyaltyPurchaseEvent.window_end_date >= purchase_date,
        )
        earliest = (await self._db.execute(stmt)).scalar_one_or_none()
        if isinstance(earliest, str):
            earliest = date.fromisoformat(earliest[:10])
        if earliest is None or earliest > purchase_date:
            return purchase_date
        return earliest

    async def order_sale_events(self, order_id: str) -> list[LoyaltyPurchaseEvent]:
        stmt = (
            select(LoyaltyPurchaseEvent)
            .where(
                LoyaltyPurchaseEvent.merchant_id == self._merchant_id,
                LoyaltyPurchaseEvent.square_order_id == order_id,
                LoyaltyPurchaseEvent.is_refund.is_(False),
            )
            .order_by(LoyaltyPurchaseEvent.recorded_at.asc())
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def record_refund(
        self,
        *,
        refund_id: str,
        order_id: str,
        return_lines: list[ReturnLine],
        trace_id: str | None = None,
    ) -> RecordedRefund:
        """Mirror returned line items as negative rows against the recorded sales.

        The refund row inherits the sale's customer, offer and window so it nets out
        exactly where the sale counted. Quantities are capped by what remains unrefunded.
        Lines that name a ``return_uid`` are keyed by it, so a return listed again on a
        later refund of the same order is not counted twice.
        """

        if not refund_id or not order_id:
            raise LoyaltyValidationError("refund_id and order_id are required")
        outcome = RecordedRefund(refund_id=refund_id)
        sales_by_order: dict[str, list[LoyaltyPurchaseEvent]] = {}
        for line in return_lines:
            sale_order_id = line.source_order_id or order_id
            if sale_order_id not in sales_by_order:
                sales_by_order[sale_order_id] = await self.order_sale_events(sale_order_id)
        sales = [sale for order_sales in sales_by_order.values() for sale in order_sales]
        if not sales:
            return outcome

        log = loyalty_logger(
            LoyaltyLogCategory.REFUND,
            merchant_id=str(self._merchant_id),
            order_id=order_id,
            refund_id=refund_id,
            trace_id=trace_id,
        )
        already_refunded = await self._refunded_quantities([sale.id for sale in sales])

        for line in return_lines:
            if line.quantity <= 0:
                continue
            candidates = sales_by_order.get(line.source_order_id or order_id, [])
            matches = [
                sale
                for sale in candidates
                if line.source_line_item_uid and sale.line_item_uid == line.source_line_item_uid
            ]
            if not matches and line.variation_id:
                matches = [sale for sale in candidates if sale.variation_id == line.variation_id]
            for sale in matches:
                remaining = sale.quantity - already_refunded.get(sale.id, 0)
                refund_qty = min(line.quantity, remaining)
                if refund_qty <= 0:
                    continue
                refund_event_id = uuid4()
                key = refund_idempotency_key(line.return_uid or refund_id, line.uid, sale.offer_id)
                created = await insert_ignoring_conflicts(
                    self._db,
                    LoyaltyPurchaseEvent,
                    {
                        "id": refund_event_id,
                        "merchant_id": self._merchant_id,
                        "offer_id": sale.offer_id,
                        "square_customer_id": sale.square_customer_id,
                        "square_order_id": sale.square_order_id,
                        "square_location_id": sale.square_location_id,
                        "variation_id": sale.variation_id,
                        "line_item_uid": sale.line_item_uid,
                        "quantity": -refund_qty,
                        "unit_price_cents": sale.unit_price_cents,
                        "purchased_at": sale.purchased_at,
                        "window_start_date": sale.window_start_date,
                        "window_end_date": sale.window_end_date,
                        "is_refund": True,
                        "refund_of_event_id": sale.id,
                        "square_refund_id": refund_id,
                        "idempotency_key": key,
                        "customer_source": sale.customer_source,
                        "trace_id": trace_id,
                    },
                    conflict_columns=("merchant_id", "idempotency_key"),
                )
                if not created:
                    outcome.duplicates += 1
                    continue
                already_refunded[sale.id] = already_refunded.get(sale.id, 0) + refund_qty
                outcome.created_event_ids.append(refund_event_id)
                outcome.refunded_event_ids.append(sale.id)
                outcome.customer_ids.add(sale.square_customer_id)
                outcome.offer_ids.add(sale.offer_id)
                log.info(
                    "Refund recorded",
                    customer_id=sale.square_customer_id,
                    offer_id=str(sale.offer_id),
                    variation_id=sale.variation_id,
                    quantity=-refund_qty,
                )
        return outcome

    async def _refunded_quantities(self, sale_ids: list[UUID]) -> dict[UUID, int]:
        stmt = (
            select(LoyaltyPurchaseEvent.refund_of_event_id, func.sum(-LoyaltyPurchaseEvent.quantity))
            .where(
                LoyaltyPurchaseEvent.merchant_id == self._merchant_id,
                LoyaltyPurchaseEvent.refund_of_event_id.in_(sale_ids),
            )
            .group_by(LoyaltyPurchaseEvent.refund_of_event_id)
        )
        return {event_id: int(total or 0) for event_id, total in (await self._db.execute(stmt)).all()}


__all__ = [
    "PurchaseLedger",
    "RecordedPurchase",
    "RecordedRefund",
    "ReturnLine",
    "purchase_idempotency_key",
    "refund_idempotency_key",
]
