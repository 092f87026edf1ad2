from datetime import date, datetime, timedelta, timezone

import pytest

from loyalty_engine_api.models.merchant import Merchant
from loyalty_engine_api.services.loyalty import (
    CustomerProgressProjector,
    LoyaltyValidationError,
    OfferCatalog,
    PurchaseLedger,
)


async def _record(session, merchant_id, offer, *, order_id, quantity, purchased_at, customer_id="cust_1"):
    await PurchaseLedger(session, merchant_id=merchant_id).record_purchase(
        offer=offer,
        customer_id=customer_id,
        order_id=order_id,
        variation_id="VAR_LARGE",
        quantity=quantity,
        purchased_at=purchased_at,
    )
    await session.commit()


@pytest.mark.asyncio
async def test_new_customer_sees_every_active_offer_at_zero(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        snapshot = await CustomerProgressProjector(session).get_customer_offer_progress(
            merchant.id, "cust_new", as_of=date(2026, 10, 18)
        )

    assert snapshot.as_of == date(2026, 10, 18)
    assert len(snapshot.offers) == 1
    progress = snapshot.offers[0]
    assert progress.offer_id == offer.id
    assert progress.current_quantity == 0
    assert progress.remaining_quantity == 12
    assert progress.window_start_date is None
    assert progress.has_earned_reward is False
    assert progress.last_purchase_at is None


@pytest.mark.asyncio
async def test_purchases_outside_their_window_stop_counting(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        await _record(
            session, merchant.id, offer,
            order_id="ORDER_OLD", quantity=4, purchased_at=datetime(2025, 8, 1, tzinfo=timezone.utc),
        )
        await _record(
            session, merchant.id, offer,
            order_id="ORDER_NEW", quantity=3, purchased_at=datetime(2026, 9, 1, tzinfo=timezone.utc),
        )

        projector = CustomerProgressProjector(session)
        before = await projector.get_customer_offer_progress(merchant.id, "cust_1", as_of=date(2026, 7, 1))
        after = await projector.get_customer_offer_progress(merchant.id, "cust_1", as_of=date(2026, 10, 18))

    assert before.offers[0].current_quantity == 7
    assert before.offers[0].window_start_date == date(2025, 8, 1)

    progress = after.offers[0]
    assert progress.current_quantity == 3
    assert progress.window_start_date == date(2026, 9, 1)
    assert progress.window_end_date == date(2027, 9, 1)
    assert progress.total_lifetime_purchases == 7
    assert progress.last_purchase_at == datetime(2026, 9, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_progress_is_isolated_per_merchant(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        other = Merchant(business_name="Uptown Pets", square_merchant_id="MLSQ_UPTOWN")
        session.add(other)
        await session.commit()
        other_offer = await OfferCatalog(session).create_offer(
            other.id, offer_name="Uptown punch card", required_quantity=5
        )
        await _record(
            session, other.id, other_offer,
            order_id="ORDER_X", quantity=5, purchased_at=datetime.now(timezone.utc) - timedelta(days=1),
        )

        snapshot = await CustomerProgressProjector(session).get_customer_offer_progress(merchant.id, "cust_1")

    assert [item.offer_id for item in snapshot.offers] == [offer.id]
    assert snapshot.offers[0].current_quantity == 0
    assert other_offer.window_months == 12


@pytest.mark.asyncio
async def test_inactive_offers_are_hidden(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        await OfferCatalog(session).deactivate_offer(merchant.id, offer.id)
        snapshot = await CustomerProgressProjector(session).get_customer_offer_progress(merchant.id, "cust_1")

    assert snapshot.offers == []


@pytest.mark.asyncio
async def test_missing_identifiers_are_rejected(session_factory, merchant) -> None:
    async with session_factory() as session:
        projector = CustomerProgressProjector(session)
        with pytest.raises(LoyaltyValidationError):
            await projector.get_customer_offer_progress(None, "cust_1")
        with pytest.raises(LoyaltyValidationError):
            await projector.get_customer_offer_progress(merchant.id, "")
