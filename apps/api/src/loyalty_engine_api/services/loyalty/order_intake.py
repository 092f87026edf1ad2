"""Turn a completed Square order into ledger rows and reward evaluations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping
from uuid import UUID, uuid4

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.db.dialects import upsert_row
from loyalty_engine_api.models.loyalty import LoyaltyOffer, LoyaltyOrderResult, LoyaltyProcessedOrder
from loyalty_engine_api.observability.loyalty import get_loyalty_store
from loyalty_engine_api.services.loyalty.audit import LoyaltyLogCategory, loyalty_logger, new_trace_id
from loyalty_engine_api.services.loyalty.errors import RewardAlreadyRedeemedError, RewardRedemptionError
from loyalty_engine_api.services.loyalty.offers import OfferCatalog
from loyalty_engine_api.services.loyalty.purchases import PurchaseLedger, ReturnLine
from loyalty_engine_api.services.loyalty.rewards import RewardLifecycleManager
from loyalty_engine_api.services.loyalty.windows import parse_square_timestamp, utcnow

_LOYALTY_DISCOUNT_MARKERS = ("loyalty", "reward", "free item", "frequent buyer")


@dataclass(slots=True)
class QualifyingLine:
    uid: str | None
    variation_id: str
    quantity: int
    unit_price_cents: int | None
    offers: list[LoyaltyOffer]


@dataclass(slots=True)
class OrderIntakeResult:
    order_id: str
    customer_id: str | None
    customer_source: str | None
    trace_id: str
    purchases_recorded: int = 0
    duplicates: int = 0
    skipped_lines: dict[str, int] = field(default_factory=dict)
    rewards_earned: list[UUID] = field(default_factory=list)
    rewards_redeemed: list[UUID] = field(default_factory=list)
    skipped_reason: str | None = None
    result_type: LoyaltyOrderResult | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "customer_source": self.customer_source,
            "trace_id": self.trace_id,
            "purchases_recorded": self.purchases_recorded,
            "duplicates": self.duplicates,
            "skipped_lines": dict(self.skipped_lines),
            "rewards_earned": [str(item) for item in self.rewards_earned],
            "rewards_redeemed": [str(item) for item in self.rewards_redeemed],
            "skipped_reason": self.skipped_reason,
            "result_type": self.result_type.value if self.result_type else None,
        }


@dataclass(slots=True)
class RefundIntakeResult:
    refund_id: str
    order_id: str
    refund_events: int = 0
    duplicates: int = 0
    rewards_revoked: list[UUID] = field(default_factory=list)
    skipped_reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "refund_id": self.refund_id,
            "order_id": self.order_id,
            "refund_events": self.refund_events,
            "duplicates": self.duplicates,
            "rewards_revoked": [str(item) for item in self.rewards_revoked],
            "skipped_reason": self.skipped_reason,
        }


def _money_amount(value: Mapping[str, Any] | None) -> int | None:
    if not value or value.get("amount") is None:
        return None
    try:
        return int(value["amount"])
    except (TypeError, ValueError):
        return None


def _quantity(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def line_variation_id(line_item: Mapping[str, Any]) -> str | None:
    return line_item.get("catalog_object_id") or line_item.get("variation_id")


def is_loyalty_redemption_line(line_item: Mapping[str, Any], order: Mapping[str, Any]) -> bool:
    """A $0 line carrying one of our loyalty discounts is a redeemed reward, not a sale."""

    if _money_amount(line_item.get("total_money")) != 0:
        return False
    names = {discount.get("uid"): discount.get("name") for discount in order.get("discounts") or []}
    for applied in line_item.get("applied_discounts") or []:
        name = (applied.get("name") or names.get(applied.get("discount_uid")) or "").lower()
        if any(marker in name for marker in _LOYALTY_DISCOUNT_MARKERS):
            return True
    return False


def refund_return_lines(refund: Mapping[str, Any], order: Mapping[str, Any]) -> list[ReturnLine]:
    """Return lines covered by ``refund``.

    Line items carried on the refund itself belong to it alone. Otherwise every
    return on the order is listed, each tagged with its return uid so returns
    already mirrored by an earlier refund dedupe against their first rows.
    """

    if refund.get("return_line_items"):
        returns = [{"return_line_items": refund["return_line_items"], "source_order_id": refund.get("source_order_id")}]
    else:
        returns = order.get("returns") or []
    return [
        ReturnLine(
            uid=line.get("uid") or f"{order_return.get('uid', 'return')}:{index}",
            source_line_item_uid=line.get("source_line_item_uid"),
            variation_id=line_variation_id(line),
            quantity=_quantity(line.get("quantity")),
            return_uid=order_return.get("uid"),
            source_order_id=order_return.get("source_order_id"),
        )
        for order_return in returns
        for index, line in enumerate(order_return.get("return_line_items") or [])
    ]


class LoyaltyOrderIntake:
    """Record qualifying purchases for one merchant and evaluate rewards."""

    def __init__(self, session: AsyncSession, *, merchant_id: UUID) -> None:
        self._db = session
        self._merchant_id = merchant_id
        self._catalog = OfferCatalog(session)
        self._ledger = PurchaseLedger(session, merchant_id=merchant_id)
        self._rewards = RewardLifecycleManager(session, merchant_id=merchant_id)

    async def process_order(
        self,
        order: Mapping[str, Any],
        *,
        customer_id: str | None,
        customer_source: str | None,
        trace_id: str | None = None,
    ) -> OrderIntakeResult:
        trace = trace_id or new_trace_id()
        order_id = order.get("id") or ""
        result = OrderIntakeResult(
            order_id=order_id, customer_id=customer_id, customer_source=customer_source, trace_id=trace
        )
        log = loyalty_logger(
            LoyaltyLogCategory.PURCHASE,
            merchant_id=str(self._merchant_id),
            order_id=order_id,
            customer_id=customer_id,
            customer_source=customer_source,
            trace_id=trace,
        )

        if order.get("state") != "COMPLETED":
            result.skipped_reason = "order_not_completed"
            return result
        if not customer_id:
            result.skipped_reason = "customer_not_identified"
            result.result_type = LoyaltyOrderResult.NO_CUSTOMER
            await self._finish_without_purchases(order, result)
            log.info("Order not attributed to a customer; purchases not recorded")
            return result

        lines = await self._qualifying_lines(order, result)
        if not lines:
            result.skipped_reason = result.skipped_reason or "no_qualifying_items"
            if await self._catalog.list_active_offers(self._merchant_id):
                result.result_type = LoyaltyOrderResult.NON_QUALIFYING
            else:
                result.result_type = LoyaltyOrderResult.NO_OFFERS
            await self._finish_without_purchases(order, result)
            log.debug("No qualifying line items", skipped=result.skipped_lines)
            return result

        result.result_type = LoyaltyOrderResult.QUALIFYING

        purchased_at = (
            parse_square_timestamp(order.get("closed_at"))
            or parse_square_timestamp(order.get("created_at"))
            or utcnow()
        )
        touched: dict[UUID, LoyaltyOffer] = {}
        try:
            for line in lines:
                for offer in line.offers:
                    recorded = await self._ledger.record_purchase(
                        offer=offer,
                        customer_id=customer_id,
                        order_id=order_id,
                        variation_id=line.variation_id,
                        quantity=line.quantity,
                        purchased_at=purchased_at,
                        line_item_uid=line.uid,
                        unit_price_cents=line.unit_price_cents,
                        location_id=order.get("location_id"),
                        customer_source=customer_source,
                        trace_id=trace,
                    )
                    if recorded.created:
                        result.purchases_recorded += 1
                    else:
                        result.duplicates += 1
                    touched[offer.id] = offer
            await self._record_processed_order(order, result, qualifying_items=len(lines))
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        get_loyalty_store().record_purchase_events(recorded=result.purchases_recorded, duplicates=result.duplicates)

        for offer in touched.values():
            reward = await self._rewards.evaluate(customer_id, offer, trace_id=trace)
            if reward is not None:
                result.rewards_earned.append(reward.id)

        log.info(
            "Order loyalty processed",
            purchases_recorded=result.purchases_recorded,
            duplicates=result.duplicates,
            rewards_earned=len(result.rewards_earned),
        )
        return result

    async def _finish_without_purchases(self, order: Mapping[str, Any], result: OrderIntakeResult) -> None:
        try:
            await self._record_processed_order(order, result, qualifying_items=0)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

    async def _record_processed_order(
        self, order: Mapping[str, Any], result: OrderIntakeResult, *, qualifying_items: int
    ) -> None:
        """Upsert the per-order outcome row; an identified row is never overwritten by an unidentified one."""

        await upsert_row(
            self._db,
            LoyaltyProcessedOrder,
            {
                "id": uuid4(),
                "merchant_id": self._merchant_id,
                "square_order_id": result.order_id,
                "square_customer_id": result.customer_id,
                "result_type": result.result_type,
                "qualifying_items": qualifying_items,
                "total_line_items": len(order.get("line_items") or []),
                "customer_source": result.customer_source,
                "trace_id": result.trace_id,
                "processed_at": utcnow(),
            },
            conflict_columns=("merchant_id", "square_order_id"),
            update_columns=(
                "square_customer_id",
                "result_type",
                "qualifying_items",
                "total_line_items",
                "customer_source",
                "trace_id",
                "processed_at",
            ),
            where=lambda excluded: or_(
                LoyaltyProcessedOrder.square_customer_id.is_(None),
                excluded.square_customer_id.is_not(None),
            ),
        )

    async def _qualifying_lines(self, order: Mapping[str, Any], result: OrderIntakeResult) -> list[QualifyingLine]:
        candidates: list[tuple[Mapping[str, Any], str, int]] = []
        for line_item in order.get("line_items") or []:
            variation_id = line_variation_id(line_item)
            quantity = _quantity(line_item.get("quantity"))
            if not variation_id:
                reason = "no_variation"
            elif quantity <= 0:
                reason = "non_positive_quantity"
            elif is_loyalty_redemption_line(line_item, order):
                reason = "loyalty_redemption"
            else:
                candidates.append((line_item, variation_id, quantity))
                continue
            result.skipped_lines[reason] = result.skipped_lines.get(reason, 0) + 1

        offers_by_variation = await self._catalog.offers_by_variation(
            self._merchant_id, [variation_id for _, variation_id, _ in candidates]
        )
        lines: list[QualifyingLine] = []
        for line_item, variation_id, quantity in candidates:
            offers = offers_by_variation.get(variation_id)
            if not offers:
                result.skipped_lines["not_qualifying"] = result.skipped_lines.get("not_qualifying", 0) + 1
                continue
            lines.append(
                QualifyingLine(
                    uid=line_item.get("uid"),
                    variation_id=variation_id,
                    quantity=quantity,
                    unit_price_cents=_money_amount(line_item.get("base_price_money")),
                    offers=offers,
                )
            )
        return lines

    async def detect_redemptions(self, order: Mapping[str, Any], *, trace_id: str | None = None) -> list[UUID]:
        """Redeem earned rewards whose POS discount object was applied to ``order``."""

        discount_ids = [
            discount.get("catalog_object_id")
            for discount in order.get("discounts") or []
            if discount.get("catalog_object_id")
        ]
        if not discount_ids or order.get("state") != "COMPLETED":
            return []
        redeemed: list[UUID] = []
        reward_ids = [reward.id for reward in await self._rewards.find_earned_by_discount(discount_ids)]
        for reward_id in reward_ids:
            try:
                await self._rewards.redeem_reward(reward_id, order_id=order.get("id"), trace_id=trace_id)
            except RewardAlreadyRedeemedError:
                continue
            except RewardRedemptionError as exc:
                loyalty_logger(
                    LoyaltyLogCategory.REDEMPTION,
                    merchant_id=str(self._merchant_id),
                    order_id=order.get("id"),
                    reward_id=str(reward_id),
                ).warning("Discount applied for a reward that cannot be redeemed", outcome=exc.code)
                continue
            redeemed.append(reward_id)
        return redeemed

    async def process_refund(
        self,
        refund: Mapping[str, Any],
        order: Mapping[str, Any],
        *,
        trace_id: str | None = None,
    ) -> RefundIntakeResult:
        refund_id = refund.get("id") or ""
        order_id = order.get("id") or refund.get("order_id") or ""
        result = RefundIntakeResult(refund_id=refund_id, order_id=order_id)
        if refund.get("status") != "COMPLETED":
            result.skipped_reason = "refund_not_completed"
            return result

        return_lines = refund_return_lines(refund, order)
        if not return_lines:
            result.skipped_reason = "no_return_line_items"
            return result

        try:
            recorded = await self._ledger.record_refund(
                refund_id=refund_id, order_id=order_id, return_lines=return_lines, trace_id=trace_id
            )
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        result.refund_events = len(recorded.created_event_ids)
        result.duplicates = recorded.duplicates
        if not recorded.created_event_ids and not recorded.duplicates:
            result.skipped_reason = "order_not_tracked"
            return result

        get_loyalty_store().record_purchase_events(recorded=0, refunds=result.refund_events, duplicates=result.duplicates)
        result.rewards_revoked = await self._rewards.revoke_for_refunds(
            recorded.refunded_event_ids, reason=f"refund:{refund_id}", trace_id=trace_id
        )
        return result


__all__ = [
    "LoyaltyOrderIntake",
    "OrderIntakeResult",
    "RefundIntakeResult",
    "is_loyalty_redemption_line",
    "line_variation_id",
    "refund_return_lines",
]
