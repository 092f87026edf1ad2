from datetime import timedelta

import pytest
from sqlalchemy import select

from loyalty_engine_api.models.loyalty import (
    LoyaltyAuditAction,
    LoyaltyAuditEvent,
    LoyaltyReward,
    LoyaltyRewardAllocation,
    LoyaltyRewardStatus,
)
from loyalty_engine_api.observability.loyalty import get_loyalty_store
from loyalty_engine_api.services.loyalty import (
    CustomerProgressProjector,
    LoyaltyOrderIntake,
    LoyaltyValidationError,
    PurchaseLedger,
    RewardAlreadyRedeemedError,
    RewardExpiredError,
    RewardInvalidStateError,
    RewardLifecycleManager,
)
from loyalty_engine_api.services.loyalty.windows import utcnow


async def _buy(session, merchant, offer, *, order_id, quantity, customer_id="cust_1", days_ago=1):
    ledger = PurchaseLedger(session, merchant_id=merchant.id)
    recorded = await ledger.record_purchase(
        offer=offer,
        customer_id=customer_id,
        order_id=order_id,
        variation_id="VAR_LARGE",
        quantity=quantity,
        purchased_at=utcnow() - timedelta(days=days_ago),
        line_item_uid=f"{order_id}-line",
    )
    await session.commit()
    return recorded


@pytest.mark.asyncio
async def test_reward_earned_at_threshold_and_excess_rolls_over(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        await _buy(session, merchant, offer, order_id="ORDER_A", quantity=10, days_ago=20)
        await _buy(session, merchant, offer, order_id="ORDER_B", quantity=5, days_ago=2)

        manager = RewardLifecycleManager(session, merchant_id=merchant.id)
        reward = await manager.evaluate("cust_1", offer)

        assert reward is not None
        assert reward.status == LoyaltyRewardStatus.EARNED
        assert reward.progress_quantity == 15
        assert reward.expires_at > utcnow()

        allocations = (
            await session.execute(
                select(LoyaltyRewardAllocation).where(LoyaltyRewardAllocation.reward_id == reward.id)
            )
        ).scalars().all()
        assert sorted(item.quantity for item in allocations) == [2, 10]

        snapshot = await CustomerProgressProjector(session).get_customer_offer_progress(merchant.id, "cust_1")
        progress = snapshot.offers[0]
        assert progress.current_quantity == 3
        assert progress.remaining_quantity == 9
        assert progress.has_earned_reward is True
        assert progress.earned_reward_id == reward.id
        assert progress.total_lifetime_purchases == 15
        assert progress.total_rewards_earned == 1

    assert get_loyalty_store().snapshot().rewards == {"earned": 1}


@pytest.mark.asyncio
async def test_evaluate_below_threshold_returns_none(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        await _buy(session, merchant, offer, order_id="ORDER_A", quantity=11)
        manager = RewardLifecycleManager(session, merchant_id=merchant.id)

        assert await manager.evaluate("cust_1", offer) is None
        rewards = (await session.execute(select(LoyaltyReward))).scalars().all()
        assert rewards == []


@pytest.mark.asyncio
async def test_only_one_earned_reward_outstanding_per_offer(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        await _buy(session, merchant, offer, order_id="ORDER_A", quantity=24)
        manager = RewardLifecycleManager(session, merchant_id=merchant.id)

        first = await manager.evaluate("cust_1", offer)
        second = await manager.evaluate("cust_1", offer)

        assert first is not None
        assert second is None

        await manager.redeem_reward(first.id, order_id="ORDER_REDEEM")
        third = await manager.evaluate("cust_1", offer)
        assert third is not None
        assert third.id != first.id


@pytest.mark.asyncio
async def test_second_redemption_reports_original_timestamp(session_factory, merchant, offer) -> None:
    redeemed_at = utcnow().replace(microsecond=0) - timedelta(minutes=5)

    async with session_factory() as session:
        await _buy(session, merchant, offer, order_id="ORDER_A", quantity=12)
        manager = RewardLifecycleManager(session, merchant_id=merchant.id)
        reward = await manager.evaluate("cust_1", offer)

        redeemed = await manager.redeem_reward(reward.id, order_id="ORDER_R1", now=redeemed_at)
        assert redeemed.status == LoyaltyRewardStatus.REDEEMED
        assert redeemed.redemption_order_id == "ORDER_R1"

    async with session_factory() as session:
        manager = RewardLifecycleManager(session, merchant_id=merchant.id)
        with pytest.raises(RewardAlreadyRedeemedError) as excinfo:
            await manager.redeem_reward(reward.id, order_id="ORDER_R2")

        assert excinfo.value.code == "already_redeemed"
        assert excinfo.value.redeemed_at == redeemed_at

        stored = await session.get(LoyaltyReward, reward.id)
        assert stored.redemption_order_id == "ORDER_R1"

    snapshot = get_loyalty_store().snapshot()
    assert snapshot.redemption_rejections == {"already_redeemed": 1}
    assert snapshot.rewards["redeemed"] == 1


@pytest.mark.asyncio
async def test_redeem_rejects_expired_and_revoked_rewards(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        await _buy(session, merchant, offer, order_id="ORDER_A", quantity=12)
        manager = RewardLifecycleManager(session, merchant_id=merchant.id)
        reward = await manager.evaluate("cust_1", offer)

        original_expiry = reward.expires_at
        with pytest.raises(RewardExpiredError) as excinfo:
            await manager.redeem_reward(reward.id, now=original_expiry + timedelta(days=1))
        assert excinfo.value.expires_at == original_expiry

        await manager.revoke_reward(reward.id, reason="manual")
        with pytest.raises(RewardInvalidStateError) as invalid:
            await manager.redeem_reward(reward.id)
        assert invalid.value.status == "revoked"


@pytest.mark.asyncio
async def test_expiry_correction_is_audited_and_keeps_window(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        await _buy(session, merchant, offer, order_id="ORDER_A", quantity=12, days_ago=30)
        manager = RewardLifecycleManager(session, merchant_id=merchant.id)
        reward = await manager.evaluate("cust_1", offer)
        window_start, window_end = reward.window_start_date, reward.window_end_date
        original_expiry = reward.expires_at

        correction = await manager.correct_reward_expiry(
            reward.id,
            expires_at=utcnow() - timedelta(hours=1),
            reason="Offer terms ended early",
            actor="ops@cornerpets.example",
        )

        assert correction.transition == "valid->lapsed"
        assert correction.previous_expires_at == original_expiry
        assert correction.reward.status == LoyaltyRewardStatus.EARNED
        assert correction.reward.window_start_date == window_start
        assert correction.reward.window_end_date == window_end

        audit = (
            await session.execute(
                select(LoyaltyAuditEvent).where(
                    LoyaltyAuditEvent.action == LoyaltyAuditAction.REWARD_EXPIRY_CORRECTED
                )
            )
        ).scalar_one()
        assert audit.reward_id == reward.id
        assert audit.details["reason"] == "Offer terms ended early"
        assert audit.details["actor"] == "ops@cornerpets.example"
        assert audit.details["transition"] == "valid->lapsed"

        with pytest.raises(RewardExpiredError):
            await manager.redeem_reward(reward.id)

        expired = await manager.expire_rewards()
        assert expired == [reward.id]
        stored = await session.get(LoyaltyReward, reward.id)
        assert stored.status == LoyaltyRewardStatus.EXPIRED


@pytest.mark.asyncio
async def test_expiry_correction_requires_reason(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        await _buy(session, merchant, offer, order_id="ORDER_A", quantity=12)
        manager = RewardLifecycleManager(session, merchant_id=merchant.id)
        reward = await manager.evaluate("cust_1", offer)

        with pytest.raises(LoyaltyValidationError):
            await manager.correct_reward_expiry(reward.id, expires_at=None, reason="")


@pytest.mark.asyncio
async def test_expired_reward_releases_units_back_to_progress(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        await _buy(session, merchant, offer, order_id="ORDER_A", quantity=12)
        manager = RewardLifecycleManager(session, merchant_id=merchant.id)
        reward = await manager.evaluate("cust_1", offer)

        expired = await manager.expire_rewards(reference_time=reward.expires_at + timedelta(seconds=1))
        assert expired == [reward.id]

        snapshot = await CustomerProgressProjector(session).get_customer_offer_progress(merchant.id, "cust_1")
        assert snapshot.offers[0].current_quantity == 12
        assert snapshot.offers[0].has_earned_reward is False

        stats = await manager.get_reward_stats("cust_1")
        assert (stats.available, stats.expired, stats.total) == (0, 1, 1)


@pytest.mark.asyncio
async def test_refund_below_threshold_revokes_reward(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        await _buy(session, merchant, offer, order_id="ORDER_A", quantity=12)
        reward = await RewardLifecycleManager(session, merchant_id=merchant.id).evaluate("cust_1", offer)

        intake = LoyaltyOrderIntake(session, merchant_id=merchant.id)
        outcome = await intake.process_refund(
            {"id": "REFUND_1", "status": "COMPLETED", "order_id": "ORDER_A"},
            {
                "id": "ORDER_A",
                "returns": [
                    {
                        "uid": "RETURN_1",
                        "return_line_items": [
                            {"uid": "RL_1", "source_line_item_uid": "ORDER_A-line", "quantity": "1"}
                        ],
                    }
                ],
            },
        )

        assert outcome.refund_events == 1
        assert outcome.rewards_revoked == [reward.id]
        stored = await session.get(LoyaltyReward, reward.id)
        assert stored.status == LoyaltyRewardStatus.REVOKED
        assert stored.revocation_reason == "refund:REFUND_1"


@pytest.mark.asyncio
async def test_refund_of_rollover_units_keeps_reward(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        await _buy(session, merchant, offer, order_id="ORDER_A", quantity=14)
        reward = await RewardLifecycleManager(session, merchant_id=merchant.id).evaluate("cust_1", offer)

        intake = LoyaltyOrderIntake(session, merchant_id=merchant.id)
        refund_order = {
            "id": "ORDER_A",
            "returns": [
                {
                    "uid": "RETURN_1",
                    "return_line_items": [{"uid": "RL_1", "catalog_object_id": "VAR_LARGE", "quantity": "2"}],
                }
            ],
        }
        outcome = await intake.process_refund({"id": "REFUND_1", "status": "COMPLETED"}, refund_order)
        replay = await intake.process_refund({"id": "REFUND_1", "status": "COMPLETED"}, refund_order)

        assert outcome.refund_events == 1
        assert outcome.rewards_revoked == []
        assert replay.refund_events == 0
        assert replay.duplicates == 1
        stored = await session.get(LoyaltyReward, reward.id)
        assert stored.status == LoyaltyRewardStatus.EARNED

        snapshot = await CustomerProgressProjector(session).get_customer_offer_progress(merchant.id, "cust_1")
        assert snapshot.offers[0].current_quantity == 0


@pytest.mark.asyncio
async def test_manager_requires_merchant() -> None:
    with pytest.raises(LoyaltyValidationError):
        RewardLifecycleManager(None, merchant_id=None)
