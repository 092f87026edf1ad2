import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from loyalty_engine_api.jobs.rewards import run_reward_expiry
from loyalty_engine_api.models.loyalty import LoyaltyReward, LoyaltyRewardStatus
from loyalty_engine_api.models.merchant import Merchant
from loyalty_engine_api.services.loyalty import OfferCatalog, PurchaseLedger, RewardLifecycleManager
from loyalty_engine_api.services.loyalty.windows import utcnow
from loyalty_engine_api.workers import RewardExpiryWorker


async def _earn(session_factory, merchant_id, offer, customer_id):
    async with session_factory() as session:
        await PurchaseLedger(session, merchant_id=merchant_id).record_purchase(
            offer=offer,
            customer_id=customer_id,
            order_id=f"ORDER_{customer_id}",
            variation_id="VAR_LARGE",
            quantity=offer.required_quantity,
            purchased_at=utcnow() - timedelta(days=1),
        )
        await session.commit()
        return await RewardLifecycleManager(session, merchant_id=merchant_id).evaluate(customer_id, offer)


@pytest.mark.asyncio
async def test_sweep_expires_lapsed_rewards_across_merchants(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        other = Merchant(business_name="Uptown Pets", square_merchant_id="MLSQ_UPTOWN")
        session.add(other)
        await session.commit()
        other_offer = await OfferCatalog(session).create_offer(
            other.id, offer_name="Uptown punch card", required_quantity=3, window_months=1
        )

    first = await _earn(session_factory, merchant.id, offer, "cust_1")
    second = await _earn(session_factory, other.id, other_offer, "cust_2")

    reference = second.expires_at + timedelta(minutes=1)
    summary = await run_reward_expiry(session_factory=session_factory, reference_time=reference)

    assert summary == {"merchants": 2, "expired": 1, "failed_merchants": 0}
    async with session_factory() as session:
        statuses = {
            reward.id: reward.status
            for reward in (await session.execute(select(LoyaltyReward))).scalars().all()
        }
    assert statuses == {first.id: LoyaltyRewardStatus.EARNED, second.id: LoyaltyRewardStatus.EXPIRED}


@pytest.mark.asyncio
async def test_inactive_merchants_are_skipped(session_factory, merchant) -> None:
    async with session_factory() as session:
        stored = await session.get(Merchant, merchant.id)
        stored.is_active = False
        await session.commit()

    summary = await run_reward_expiry(session_factory=session_factory)

    assert summary == {"merchants": 0, "expired": 0, "failed_merchants": 0}


@pytest.mark.asyncio
async def test_worker_run_once_records_summary(session_factory, merchant) -> None:
    worker = RewardExpiryWorker(session_factory, interval_seconds=5)

    summary = await worker.run_once()

    assert summary["merchants"] == 1
    assert worker.last_summary == summary
    assert worker.is_running is False


@pytest.mark.asyncio
async def test_worker_start_and_stop(session_factory, merchant) -> None:
    worker = RewardExpiryWorker(session_factory, interval_seconds=3600)

    worker.start()
    assert worker.is_running is True
    await asyncio.sleep(0)
    await worker.stop()

    assert worker.is_running is False
    assert worker.last_summary is not None
