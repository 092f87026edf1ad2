"""Customer progress projection over the append-only purchase ledger.

Progress is never stored. Every read sums the ledger rows whose own window has not
closed and subtracts the units already allocated to ``earned`` or ``redeemed``
rewards. Allocations belonging to expired or revoked rewards are released.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from uuid import UUID

from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.models.loyalty import (
    LoyaltyOffer,
    LoyaltyPurchaseEvent,
    LoyaltyReward,
    LoyaltyRewardAllocation,
    LoyaltyRewardStatus,
)
from loyalty_engine_api.services.loyalty.audit import LoyaltyLogCategory, loyalty_logger
from loyalty_engine_api.services.loyalty.errors import LoyaltyValidationError
from loyalty_engine_api.services.loyalty.offers import OfferCatalog
from loyalty_engine_api.services.loyalty.windows import ensure_timezone, utcnow

CONSUMING_STATUSES = (LoyaltyRewardStatus.EARNED, LoyaltyRewardStatus.REDEEMED)


@dataclass(slots=True)
class OfferProgress:
    offer_id: UUID
    offer_name: str
    required_quantity: int
    window_months: int
    current_quantity: int = 0
    window_start_date: date | None = None
    window_end_date: date | None = None
    has_earned_reward: bool = False
    earned_reward_id: UUID | None = None
    total_lifetime_purchases: int = 0
    total_rewards_earned: int = 0
    total_rewards_redeemed: int = 0
    last_purchase_at: datetime | None = None

    @property
    def remaining_quantity(self) -> int:
        return max(self.required_quantity - self.current_quantity, 0)


@dataclass(slots=True)
class CustomerProgressSnapshot:
    merchant_id: UUID
    customer_id: str
    as_of: date
    offers: list[OfferProgress] = field(default_factory=list)


@dataclass(slots=True)
class WindowProgress:
    current_quantity: int
    window_start_date: date | None
    window_end_date: date | None


@dataclass(slots=True)
class AvailableUnits:
    event_id: UUID
    purchased_at: datetime
    available: int


def _consumed_by_event(merchant_id: UUID, customer_id: str):
    return (
        select(
            LoyaltyRewardAllocation.purchase_event_id.label("event_id"),
            func.sum(LoyaltyRewardAllocation.quantity).label("consumed"),
        )
        .join(LoyaltyReward, LoyaltyReward.id == LoyaltyRewardAllocation.reward_id)
        .where(
            LoyaltyReward.merchant_id == merchant_id,
            LoyaltyReward.square_customer_id == customer_id,
            LoyaltyReward.status.in_(CONSUMING_STATUSES),
        )
        .group_by(LoyaltyRewardAllocation.purchase_event_id)
        .subquery("consumed")
    )


def _refunded_by_event(merchant_id: UUID, customer_id: str):
    return (
        select(
            LoyaltyPurchaseEvent.refund_of_event_id.label("event_id"),
            func.sum(-LoyaltyPurchaseEvent.quantity).label("refunded"),
        )
        .where(
            LoyaltyPurchaseEvent.merchant_id == merchant_id,
            LoyaltyPurchaseEvent.square_customer_id == customer_id,
            LoyaltyPurchaseEvent.is_refund.is_(True),
            LoyaltyPurchaseEvent.refund_of_event_id.is_not(None),
        )
        .group_by(LoyaltyPurchaseEvent.refund_of_event_id)
        .subquery("refunded")
    )


class CustomerProgressProjector:
    """Computes per-offer progress for one customer on demand."""

    def __init__(self, session: AsyncSession, *, catalog: OfferCatalog | None = None) -> None:
        self._db = session
        self._catalog = catalog or OfferCatalog(session)

    async def get_customer_offer_progress(
        self,
        merchant_id: UUID | None,
        customer_id: str | None,
        *,
        as_of: date | None = None,
    ) -> CustomerProgressSnapshot:
        if not merchant_id:
            raise LoyaltyValidationError("merchant_id is required")
        if not customer_id:
            raise LoyaltyValidationError("customer_id is required")

        today = as_of or utcnow().date()
        log = loyalty_logger(LoyaltyLogCategory.CUSTOMER, merchant_id=str(merchant_id), customer_id=customer_id)
        try:
            offers = await self._catalog.list_active_offers(merchant_id)
            event_totals = await self._aggregate_events(merchant_id, customer_id, today)
            reward_totals = await self._aggregate_rewards(merchant_id, customer_id)
        except Exception:
            log.exception("Customer progress projection failed")
            raise

        snapshot = CustomerProgressSnapshot(merchant_id=merchant_id, customer_id=customer_id, as_of=today)
        for offer in offers:
            progress = OfferProgress(
                offer_id=offer.id,
                offer_name=offer.offer_name,
                required_quantity=offer.required_quantity,
                window_months=offer.window_months,
            )
            events = event_totals.get(offer.id)
            if events is not None:
                progress.current_quantity = events["current"]
                progress.window_start_date = events["window_start"]
                progress.window_end_date = events["window_end"]
                progress.total_lifetime_purchases = events["lifetime"]
                progress.last_purchase_at = events["last_purchase_at"]
            rewards = reward_totals.get(offer.id)
            if rewards is not None:
                progress.total_rewards_earned = rewards["earned_total"]
                progress.total_rewards_redeemed = rewards["redeemed_total"]
                progress.earned_reward_id = rewards["earned_reward_id"]
                progress.has_earned_reward = rewards["earned_reward_id"] is not None
            snapshot.offers.append(progress)

        log.debug("Customer progress projected", offers=len(snapshot.offers))
        return snapshot

    async def compute_offer_progress(
        self,
        merchant_id: UUID,
        customer_id: str,
        offer: LoyaltyOffer,
        *,
        as_of: date | None = None,
    ) -> WindowProgress:
        today = as_of or utcnow().date()
        totals = await self._aggregate_events(merchant_id, customer_id, today, offer_id=offer.id)
        row = totals.get(offer.id)
        if row is None:
            return WindowProgress(current_quantity=0, window_start_date=None, window_end_date=None)
        return WindowProgress(
            current_quantity=row["current"],
            window_start_date=row["window_start"],
            window_end_date=row["window_end"],
        )

    async def available_units(
        self,
        merchant_id: UUID,
        customer_id: str,
        offer_id: UUID,
        *,
        as_of: date | None = None,
    ) -> list[AvailableUnits]:
        """In-window sale rows with units neither refunded nor consumed, oldest first."""

        today = as_of or utcnow().date()
        consumed = _consumed_by_event(merchant_id, customer_id)
        refunded = _refunded_by_event(merchant_id, customer_id)
        event = LoyaltyPurchaseEvent
        stmt = (
            select(
                event.id,
                event.purchased_at,
                event.quantity,
                func.coalesce(consumed.c.consumed, 0),
                func.coalesce(refunded.c.refunded, 0),
            )
            .outerjoin(consumed, consumed.c.event_id == event.id)
            .outerjoin(refunded, refunded.c.event_id == event.id)
            .where(
                event.merchant_id == merchant_id,
                event.square_customer_id == customer_id,
                event.offer_id == offer_id,
                event.is_refund.is_(False),
                event.quantity > 0,
                event.window_end_date >= today,
            )
            .order_by(event.purchased_at.asc(), event.recorded_at.asc(), event.id.asc())
        )
        units: list[AvailableUnits] = []
        for event_id, purchased_at, quantity, consumed_qty, refunded_qty in (await self._db.execute(stmt)).all():
            available = int(quantity) - int(consumed_qty) - int(refunded_qty)
            if available > 0:
                units.append(AvailableUnits(event_id=event_id, purchased_at=ensure_timezone(purchased_at), available=available))
        return units

    async def _aggregate_events(
        self,
        merchant_id: UUID,
        customer_id: str,
        today: date,
        *,
        offer_id: UUID | None = None,
    ) -> dict[UUID, dict]:
        event = LoyaltyPurchaseEvent
        consumed = _consumed_by_event(merchant_id, customer_id)
        consumed_qty = func.coalesce(consumed.c.consumed, 0)
        in_window = event.window_end_date >= today

        stmt = (
            select(
                event.offer_id,
                func.coalesce(func.sum(case((in_window, event.quantity - consumed_qty), else_=0)), 0).label("current"),
                func.coalesce(func.sum(case((event.quantity > 0, event.quantity), else_=0)), 0).label("lifetime"),
                func.min(
                    case((and_(in_window, event.quantity - consumed_qty > 0), event.window_start_date))
                ).label("window_start"),
                func.max(case((in_window, event.window_end_date))).label("window_end"),
                func.max(case((event.quantity > 0, event.purchased_at))).label("last_purchase_at"),
            )
            .outerjoin(consumed, consumed.c.event_id == event.id)
            .where(event.merchant_id == merchant_id, event.square_customer_id == customer_id)
            .group_by(event.offer_id)
        )
        if offer_id is not None:
            stmt = stmt.where(event.offer_id == offer_id)

        totals: dict[UUID, dict] = {}
        for row in (await self._db.execute(stmt)).mappings():
            totals[row["offer_id"]] = {
                "current": max(int(row["current"] or 0), 0),
                "lifetime": int(row["lifetime"] or 0),
                "window_start": _as_date(row["window_start"]),
                "window_end": _as_date(row["window_end"]),
                "last_purchase_at": ensure_timezone(_as_datetime(row["last_purchase_at"])),
            }
        return totals

    async def _aggregate_rewards(self, merchant_id: UUID, customer_id: str) -> dict[UUID, dict]:
        reward = LoyaltyReward
        counts_stmt = (
            select(
                reward.offer_id,
                func.sum(case((reward.status != LoyaltyRewardStatus.REVOKED, 1), else_=0)).label("earned_total"),
                func.sum(case((reward.status == LoyaltyRewardStatus.REDEEMED, 1), else_=0)).label("redeemed_total"),
            )
            .where(reward.merchant_id == merchant_id, reward.square_customer_id == customer_id)
            .group_by(reward.offer_id)
        )
        totals: dict[UUID, dict] = {}
        for row in (await self._db.execute(counts_stmt)).mappings():
            totals[row["offer_id"]] = {
                "earned_total": int(row["earned_total"] or 0),
                "redeemed_total": int(row["redeemed_total"] or 0),
                "earned_reward_id": None,
            }

        earned_stmt = (
            select(reward.offer_id, reward.id)
            .where(
                reward.merchant_id == merchant_id,
                reward.square_customer_id == customer_id,
                reward.status == LoyaltyRewardStatus.EARNED,
            )
            .order_by(reward.earned_at.asc())
        )
        for offer_id, reward_id in (await self._db.execute(earned_stmt)).all():
            entry = totals.setdefault(offer_id, {"earned_total": 0, "redeemed_total": 0, "earned_reward_id": None})
            if entry["earned_reward_id"] is None:
                entry["earned_reward_id"] = reward_id
        return totals


def _as_date(value: object) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _as_datetime(value: object) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


__all__ = [
    "AvailableUnits",
    "CustomerProgressProjector",
    "CustomerProgressSnapshot",
    "OfferProgress",
    "WindowProgress",
]
