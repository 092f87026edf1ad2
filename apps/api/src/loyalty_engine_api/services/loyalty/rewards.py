"""Reward lifecycle: earn, redeem, expire, revoke.

Every write runs in the caller's session, locks the narrowest row it touches, and
either commits the whole transition or rolls back before the error propagates.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable
from uuid import UUID, uuid4

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.db.dialects import insert_ignoring_conflicts
from loyalty_engine_api.models.loyalty import (
    LoyaltyAuditAction,
    LoyaltyCustomerOfferLock,
    LoyaltyOffer,
    LoyaltyPurchaseEvent,
    LoyaltyReward,
    LoyaltyRewardAllocation,
    LoyaltyRewardStatus,
)
from loyalty_engine_api.observability.loyalty import get_loyalty_store
from loyalty_engine_api.services.loyalty.audit import LoyaltyLogCategory, loyalty_logger, record_audit_event
from loyalty_engine_api.services.loyalty.errors import (
    LoyaltyError,
    LoyaltyNotFoundError,
    LoyaltyValidationError,
    RewardAlreadyRedeemedError,
    RewardExpiredError,
    RewardInvalidStateError,
)
from loyalty_engine_api.services.loyalty.progress import CustomerProgressProjector
from loyalty_engine_api.services.loyalty.windows import add_months, ensure_timezone, utcnow


@dataclass(slots=True)
class RewardStats:
    available: int = 0
    redeemed: int = 0
    expired: int = 0
    revoked: int = 0

    @property
    def total(self) -> int:
        return self.available + self.redeemed + self.expired + self.revoked


@dataclass(slots=True)
class ExpiryCorrection:
    reward: LoyaltyReward
    previous_expires_at: datetime | None
    new_expires_at: datetime | None
    transition: str


class RewardLifecycleManager:
    """State machine for reward instances of one merchant."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        merchant_id: UUID,
        projector: CustomerProgressProjector | None = None,
    ) -> None:
        if not merchant_id:
            raise LoyaltyValidationError("merchant_id is required")
        self._db = session
        self._merchant_id = merchant_id
        self._projector = projector or CustomerProgressProjector(session)

    # Earn

    async def evaluate(
        self,
        customer_id: str,
        offer: LoyaltyOffer,
        *,
        trace_id: str | None = None,
        as_of: date | None = None,
    ) -> LoyaltyReward | None:
        """Create an ``earned`` reward when progress reaches the offer threshold.

        The (merchant, customer, offer) anchor row is locked first and the existing
        ``earned`` reward re-checked under that lock, so concurrent deliveries for the
        same order serialize and only the first one inserts.
        """

        if not customer_id:
            raise LoyaltyValidationError("customer_id is required")
        log = loyalty_logger(
            LoyaltyLogCategory.REWARD,
            merchant_id=str(self._merchant_id),
            customer_id=customer_id,
            offer_id=str(offer.id),
            trace_id=trace_id,
        )
        now = utcnow()
        today = as_of or now.date()
        try:
            await self._lock_customer_offer(customer_id, offer.id, now)

            outstanding = await self._outstanding_reward(customer_id, offer.id)
            if outstanding is not None:
                await self._db.commit()
                log.debug("Earned reward already outstanding", reward_id=str(outstanding.id))
                return None

            progress = await self._projector.compute_offer_progress(
                self._merchant_id, customer_id, offer, as_of=today
            )
            if progress.current_quantity < offer.required_quantity:
                await self._db.commit()
                log.debug(
                    "Threshold not reached",
                    current_quantity=progress.current_quantity,
                    required_quantity=offer.required_quantity,
                )
                return None

            reward = LoyaltyReward(
                merchant_id=self._merchant_id,
                offer_id=offer.id,
                square_customer_id=customer_id,
                status=LoyaltyRewardStatus.EARNED,
                progress_quantity=progress.current_quantity,
                window_start_date=progress.window_start_date,
                window_end_date=progress.window_end_date,
                earned_at=now,
                expires_at=add_months(now, offer.window_months),
                trace_id=trace_id,
            )
            self._db.add(reward)
            await self._db.flush()

            allocated = await self._allocate(reward, offer, today)
            record_audit_event(
                self._db,
                merchant_id=self._merchant_id,
                action=LoyaltyAuditAction.REWARD_EARNED,
                reward=reward,
                details={
                    "progress_quantity": progress.current_quantity,
                    "required_quantity": offer.required_quantity,
                    "allocated_events": allocated,
                    "window_start_date": progress.window_start_date.isoformat() if progress.window_start_date else None,
                    "window_end_date": progress.window_end_date.isoformat() if progress.window_end_date else None,
                },
            )
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            log.exception("Reward evaluation failed")
            raise

        get_loyalty_store().record_reward_transition(LoyaltyRewardStatus.EARNED.value)
        log.info(
            "Reward earned",
            reward_id=str(reward.id),
            progress_quantity=reward.progress_quantity,
            expires_at=reward.expires_at.isoformat() if reward.expires_at else None,
        )
        return reward

    async def _lock_customer_offer(self, customer_id: str, offer_id: UUID, now: datetime) -> LoyaltyCustomerOfferLock:
        await insert_ignoring_conflicts(
            self._db,
            LoyaltyCustomerOfferLock,
            {
                "id": uuid4(),
                "merchant_id": self._merchant_id,
                "square_customer_id": customer_id,
                "offer_id": offer_id,
            },
            conflict_columns=("merchant_id", "square_customer_id", "offer_id"),
        )
        stmt = (
            select(LoyaltyCustomerOfferLock)
            .where(
                LoyaltyCustomerOfferLock.merchant_id == self._merchant_id,
                LoyaltyCustomerOfferLock.square_customer_id == customer_id,
                LoyaltyCustomerOfferLock.offer_id == offer_id,
            )
            .with_for_update()
        )
        anchor = (await self._db.execute(stmt)).scalar_one()
        anchor.last_evaluated_at = now
        return anchor

    async def _outstanding_reward(self, customer_id: str, offer_id: UUID) -> LoyaltyReward | None:
        stmt = (
            select(LoyaltyReward)
            .where(
                LoyaltyReward.merchant_id == self._merchant_id,
                LoyaltyReward.square_customer_id == customer_id,
                LoyaltyReward.offer_id == offer_id,
                LoyaltyReward.status == LoyaltyRewardStatus.EARNED,
            )
            .limit(1)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _allocate(self, reward: LoyaltyReward, offer: LoyaltyOffer, today: date) -> int:
        """Consume the oldest available units; the crossing row is split so the rest rolls over."""

        remaining = offer.required_quantity
        touched = 0
        units = await self._projector.available_units(
            self._merchant_id, reward.square_customer_id, offer.id, as_of=today
        )
        for unit in units:
            if remaining <= 0:
                break
            take = min(unit.available, remaining)
            self._db.add(LoyaltyRewardAllocation(reward_id=reward.id, purchase_event_id=unit.event_id, quantity=take))
            remaining -= take
            touched += 1
        if remaining > 0:
            raise LoyaltyError(
                f"Only {offer.required_quantity - remaining} of {offer.required_quantity} units available to allocate",
                code="allocation_shortfall",
            )
        return touched

    # Redeem

    async def redeem_reward(
        self,
        reward_id: UUID,
        *,
        order_id: str | None = None,
        trace_id: str | None = None,
        now: datetime | None = None,
    ) -> LoyaltyReward:
        if not reward_id:
            raise LoyaltyValidationError("reward_id is required")
        moment = now or utcnow()
        log = loyalty_logger(
            LoyaltyLogCategory.REDEMPTION,
            merchant_id=str(self._merchant_id),
            reward_id=str(reward_id),
            order_id=order_id,
            trace_id=trace_id,
        )
        try:
            reward = await self._lock_reward(reward_id)
            if reward is None:
                raise LoyaltyNotFoundError(f"Reward {reward_id} not found")
            if reward.status == LoyaltyRewardStatus.REDEEMED or reward.redeemed_at is not None:
                raise RewardAlreadyRedeemedError(reward.id, ensure_timezone(reward.redeemed_at))
            expires_at = ensure_timezone(reward.expires_at)
            if expires_at is not None and expires_at <= moment:
                raise RewardExpiredError(reward.id, expires_at)
            if reward.status != LoyaltyRewardStatus.EARNED:
                raise RewardInvalidStateError(reward.id, LoyaltyRewardStatus(reward.status).value)

            reward.status = LoyaltyRewardStatus.REDEEMED
            reward.redeemed_at = moment
            reward.redemption_order_id = order_id
            if trace_id:
                reward.trace_id = trace_id
            record_audit_event(
                self._db,
                merchant_id=self._merchant_id,
                action=LoyaltyAuditAction.REWARD_REDEEMED,
                reward=reward,
                order_id=order_id,
                trace_id=trace_id,
            )
            await self._db.commit()
        except LoyaltyError as exc:
            await self._db.rollback()
            get_loyalty_store().record_redemption_rejection(exc.code)
            log.warning("Reward redemption rejected", outcome=exc.code, reason=str(exc))
            raise
        except Exception as exc:
            await self._db.rollback()
            log.exception("Reward redemption failed", outcome="error", error=str(exc))
            raise

        get_loyalty_store().record_reward_transition(LoyaltyRewardStatus.REDEEMED.value)
        log.info(
            "Reward redeemed",
            outcome="redeemed",
            customer_id=reward.square_customer_id,
            offer_id=str(reward.offer_id),
            redeemed_at=moment.isoformat(),
        )
        return reward

    async def _lock_reward(self, reward_id: UUID) -> LoyaltyReward | None:
        stmt = (
            select(LoyaltyReward)
            .where(LoyaltyReward.merchant_id == self._merchant_id, LoyaltyReward.id == reward_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    # Expire / revoke / correct

    async def expire_rewards(self, *, reference_time: datetime | None = None) -> list[UUID]:
        """Sweep ``earned`` rewards whose expiry has passed; returns their ids."""

        now = reference_time or utcnow()
        log = loyalty_logger(LoyaltyLogCategory.REWARD, merchant_id=str(self._merchant_id))
        stmt = (
            select(LoyaltyReward)
            .where(
                LoyaltyReward.merchant_id == self._merchant_id,
                LoyaltyReward.status == LoyaltyRewardStatus.EARNED,
                LoyaltyReward.expires_at.is_not(None),
                LoyaltyReward.expires_at <= now,
            )
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        try:
            rewards = list((await self._db.execute(stmt)).scalars().all())
            for reward in rewards:
                reward.status = LoyaltyRewardStatus.EXPIRED
                record_audit_event(
                    self._db,
                    merchant_id=self._merchant_id,
                    action=LoyaltyAuditAction.REWARD_EXPIRED,
                    reward=reward,
                    details={"expires_at": ensure_timezone(reward.expires_at).isoformat()},
                )
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            log.exception("Reward expiry sweep failed")
            raise

        expired_ids = [reward.id for reward in rewards]
        store = get_loyalty_store()
        for _ in expired_ids:
            store.record_reward_transition(LoyaltyRewardStatus.EXPIRED.value)
        if expired_ids:
            log.info("Rewards expired", count=len(expired_ids), reward_ids=[str(item) for item in expired_ids])
        return expired_ids

    async def revoke_reward(self, reward_id: UUID, *, reason: str, trace_id: str | None = None) -> LoyaltyReward:
        try:
            reward = await self._lock_reward(reward_id)
            if reward is None:
                raise LoyaltyNotFoundError(f"Reward {reward_id} not found")
            self._revoke(reward, reason=reason, trace_id=trace_id)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
        get_loyalty_store().record_reward_transition(LoyaltyRewardStatus.REVOKED.value)
        return reward

    def _revoke(self, reward: LoyaltyReward, *, reason: str, trace_id: str | None) -> None:
        if reward.status != LoyaltyRewardStatus.EARNED:
            raise RewardInvalidStateError(reward.id, LoyaltyRewardStatus(reward.status).value)
        reward.status = LoyaltyRewardStatus.REVOKED
        reward.revoked_at = utcnow()
        reward.revocation_reason = reason
        record_audit_event(
            self._db,
            merchant_id=self._merchant_id,
            action=LoyaltyAuditAction.REWARD_REVOKED,
            reward=reward,
            trace_id=trace_id,
            details={"reason": reason},
        )
        loyalty_logger(
            LoyaltyLogCategory.REWARD,
            merchant_id=str(self._merchant_id),
            reward_id=str(reward.id),
            trace_id=trace_id,
        ).warning("Reward revoked", reason=reason)

    async def revoke_for_refunds(
        self,
        refunded_event_ids: Iterable[UUID],
        *,
        reason: str,
        trace_id: str | None = None,
    ) -> list[UUID]:
        """Revoke earned rewards whose consumed units were refunded below the threshold.

        Refunded units are taken from the unallocated part of a sale row first.
        """

        event_ids = list(set(refunded_event_ids))
        if not event_ids:
            return []

        rewards_stmt = (
            select(LoyaltyReward)
            .join(LoyaltyRewardAllocation, LoyaltyRewardAllocation.reward_id == LoyaltyReward.id)
            .where(
                LoyaltyReward.merchant_id == self._merchant_id,
                LoyaltyReward.status == LoyaltyRewardStatus.EARNED,
                LoyaltyRewardAllocation.purchase_event_id.in_(event_ids),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        revoked: list[UUID] = []
        try:
            rewards = list((await self._db.execute(rewards_stmt)).scalars().unique().all())
            for reward in rewards:
                offer = await self._db.get(LoyaltyOffer, reward.offer_id)
                retained = await self._retained_units(reward)
                if offer is not None and retained < offer.required_quantity:
                    self._revoke(reward, reason=reason, trace_id=trace_id)
                    revoked.append(reward.id)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
        for _ in revoked:
            get_loyalty_store().record_reward_transition(LoyaltyRewardStatus.REVOKED.value)
        return revoked

    async def _retained_units(self, reward: LoyaltyReward) -> int:
        event = LoyaltyPurchaseEvent
        refunds = (
            select(event.refund_of_event_id.label("event_id"), func.sum(-event.quantity).label("refunded"))
            .where(event.merchant_id == self._merchant_id, event.is_refund.is_(True))
            .group_by(event.refund_of_event_id)
            .subquery("refunds")
        )
        stmt = (
            select(LoyaltyRewardAllocation.quantity, event.quantity, func.coalesce(refunds.c.refunded, 0))
            .join(event, event.id == LoyaltyRewardAllocation.purchase_event_id)
            .outerjoin(refunds, refunds.c.event_id == event.id)
            .where(LoyaltyRewardAllocation.reward_id == reward.id)
        )
        retained = 0
        for allocated, sold, refunded in (await self._db.execute(stmt)).all():
            unallocated = int(sold) - int(allocated)
            hit = max(int(refunded) - unallocated, 0)
            retained += max(int(allocated) - hit, 0)
        return retained

    async def correct_reward_expiry(
        self,
        reward_id: UUID,
        *,
        expires_at: datetime | None,
        reason: str,
        actor: str | None = None,
    ) -> ExpiryCorrection:
        """Edit an earned reward's expiry as an explicit, audited transition.

        The earn-time window snapshot is kept. If the new date puts the reward past
        expiry it stays ``earned`` until the sweep, but redemption is refused from now on.
        """

        if not reason:
            raise LoyaltyValidationError("reason is required for an expiry correction")
        now = utcnow()
        new_expiry = ensure_timezone(expires_at)
        try:
            reward = await self._lock_reward(reward_id)
            if reward is None:
                raise LoyaltyNotFoundError(f"Reward {reward_id} not found")
            if reward.status != LoyaltyRewardStatus.EARNED:
                raise RewardInvalidStateError(reward.id, LoyaltyRewardStatus(reward.status).value)

            previous = ensure_timezone(reward.expires_at)
            was_valid = previous is None or previous > now
            is_valid = new_expiry is None or new_expiry > now
            transition = f"{'valid' if was_valid else 'lapsed'}->{'valid' if is_valid else 'lapsed'}"

            reward.expires_at = new_expiry
            record_audit_event(
                self._db,
                merchant_id=self._merchant_id,
                action=LoyaltyAuditAction.REWARD_EXPIRY_CORRECTED,
                reward=reward,
                details={
                    "previous_expires_at": previous.isoformat() if previous else None,
                    "new_expires_at": new_expiry.isoformat() if new_expiry else None,
                    "transition": transition,
                    "reason": reason,
                    "actor": actor,
                    "window_start_date": reward.window_start_date.isoformat() if reward.window_start_date else None,
                    "window_end_date": reward.window_end_date.isoformat() if reward.window_end_date else None,
                },
            )
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        loyalty_logger(
            LoyaltyLogCategory.REWARD, merchant_id=str(self._merchant_id), reward_id=str(reward_id)
        ).warning(
            "Reward expiry corrected",
            previous_expires_at=previous.isoformat() if previous else None,
            new_expires_at=new_expiry.isoformat() if new_expiry else None,
            transition=transition,
            reason=reason,
            actor=actor,
        )
        return ExpiryCorrection(
            reward=reward,
            previous_expires_at=previous,
            new_expires_at=new_expiry,
            transition=transition,
        )

    # Lookups

    async def get_redeemable_reward(
        self, customer_id: str, offer_id: UUID, *, now: datetime | None = None
    ) -> LoyaltyReward | None:
        if not customer_id or not offer_id:
            raise LoyaltyValidationError("customer_id and offer_id are required")
        moment = now or utcnow()
        stmt = (
            select(LoyaltyReward)
            .where(
                LoyaltyReward.merchant_id == self._merchant_id,
                LoyaltyReward.square_customer_id == customer_id,
                LoyaltyReward.offer_id == offer_id,
                LoyaltyReward.status == LoyaltyRewardStatus.EARNED,
                LoyaltyReward.redeemed_at.is_(None),
                or_(LoyaltyReward.expires_at.is_(None), LoyaltyReward.expires_at > moment),
            )
            .order_by(LoyaltyReward.earned_at.asc())
            .limit(1)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def count_earned_rewards(self, customer_id: str, *, now: datetime | None = None) -> int:
        return (await self.get_reward_stats(customer_id, now=now)).available

    async def get_reward_stats(self, customer_id: str, *, now: datetime | None = None) -> RewardStats:
        if not customer_id:
            raise LoyaltyValidationError("customer_id is required")
        moment = now or utcnow()
        reward = LoyaltyReward
        lapsed = and_(reward.status == LoyaltyRewardStatus.EARNED, reward.expires_at.is_not(None), reward.expires_at <= moment)
        stmt = (
            select(reward.status, lapsed.label("lapsed"), func.count(reward.id))
            .where(reward.merchant_id == self._merchant_id, reward.square_customer_id == customer_id)
            .group_by(reward.status, lapsed)
        )
        counts: dict[str, int] = defaultdict(int)
        for status, is_lapsed, count in (await self._db.execute(stmt)).all():
            status_value = LoyaltyRewardStatus(status).value
            if status_value == LoyaltyRewardStatus.EARNED.value and is_lapsed:
                status_value = LoyaltyRewardStatus.EXPIRED.value
            counts[status_value] += int(count)
        return RewardStats(
            available=counts[LoyaltyRewardStatus.EARNED.value],
            redeemed=counts[LoyaltyRewardStatus.REDEEMED.value],
            expired=counts[LoyaltyRewardStatus.EXPIRED.value],
            revoked=counts[LoyaltyRewardStatus.REVOKED.value],
        )

    async def list_customer_rewards(self, customer_id: str, *, limit: int = 50) -> list[LoyaltyReward]:
        if not customer_id:
            raise LoyaltyValidationError("customer_id is required")
        stmt = (
            select(LoyaltyReward)
            .where(LoyaltyReward.merchant_id == self._merchant_id, LoyaltyReward.square_customer_id == customer_id)
            .order_by(LoyaltyReward.earned_at.desc())
            .limit(limit)
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def find_earned_by_discount(self, discount_ids: Iterable[str]) -> list[LoyaltyReward]:
        wanted = [item for item in set(discount_ids) if item]
        if not wanted:
            return []
        stmt = select(LoyaltyReward).where(
            LoyaltyReward.merchant_id == self._merchant_id,
            LoyaltyReward.status == LoyaltyRewardStatus.EARNED,
            LoyaltyReward.square_discount_id.in_(wanted),
        )
        return list((await self._db.execute(stmt)).scalars().all())


__all__ = ["ExpiryCorrection", "RewardLifecycleManager", "RewardStats"]
