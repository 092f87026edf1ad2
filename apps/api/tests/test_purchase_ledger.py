from datetime import date, datetime, timezone

import pytest
from sqlalchemy import func, select

from loyalty_engine_api.models.loyalty import LoyaltyPurchaseEvent
from loyalty_engine_api.services.loyalty import LoyaltyValidationError, PurchaseLedger, ReturnLine
from loyalty_engine_api.services.loyalty.windows import add_months


@pytest.mark.asyncio
async def test_replayed_line_item_is_recorded_once(session_factory, merchant, offer) -> None:
    purchased_at = datetime(2026, 3, 14, 18, 5, tzinfo=timezone.utc)

    async with session_factory() as session:
        ledger = PurchaseLedger(session, merchant_id=merchant.id)
        kwargs = dict(
            offer=offer,
            customer_id="cust_1",
            order_id="ORDER_A",
            variation_id="VAR_LARGE",
            quantity=2,
            purchased_at=purchased_at,
            line_item_uid="LINE_1",
        )
        first = await ledger.record_purchase(**kwargs)
        second = await ledger.record_purchase(**kwargs)
        await session.commit()

        assert first.created is True
        assert first.event_id is not None
        assert second.created is False
        assert second.idempotency_key == first.idempotency_key == f"ORDER_A:LINE_1:{offer.id}"

        rows = (await session.execute(select(LoyaltyPurchaseEvent))).scalars().all()
        assert len(rows) == 1
        assert rows[0].window_start_date == date(2026, 3, 14)
        assert rows[0].window_end_date == date(2027, 3, 14)


@pytest.mark.asyncio
async def test_later_purchases_share_the_open_window_start(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        ledger = PurchaseLedger(session, merchant_id=merchant.id)
        for order_id, purchased_at in (
            ("ORDER_A", datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc)),
            ("ORDER_B", datetime(2026, 6, 2, 12, 0, tzinfo=timezone.utc)),
        ):
            await ledger.record_purchase(
                offer=offer,
                customer_id="cust_1",
                order_id=order_id,
                variation_id="VAR_LARGE",
                quantity=1,
                purchased_at=purchased_at,
            )
        await session.commit()

        rows = (
            await session.execute(select(LoyaltyPurchaseEvent).order_by(LoyaltyPurchaseEvent.purchased_at))
        ).scalars().all()
        assert [row.window_start_date for row in rows] == [date(2026, 1, 31), date(2026, 1, 31)]
        assert [row.window_end_date for row in rows] == [date(2027, 1, 31), date(2027, 6, 2)]


@pytest.mark.asyncio
async def test_refund_rows_inherit_sale_window_and_cap_quantity(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        ledger = PurchaseLedger(session, merchant_id=merchant.id)
        sale = await ledger.record_purchase(
            offer=offer,
            customer_id="cust_1",
            order_id="ORDER_A",
            variation_id="VAR_LARGE",
            quantity=3,
            purchased_at=datetime(2026, 5, 1, tzinfo=timezone.utc),
            line_item_uid="LINE_1",
        )
        refund = await ledger.record_refund(
            refund_id="REFUND_1",
            order_id="ORDER_A",
            return_lines=[ReturnLine(uid="RL_1", source_line_item_uid="LINE_1", variation_id=None, quantity=5)],
        )
        await session.commit()

        assert refund.refunded_event_ids == [sale.event_id]
        assert refund.customer_ids == {"cust_1"}

        row = (
            await session.execute(select(LoyaltyPurchaseEvent).where(LoyaltyPurchaseEvent.is_refund.is_(True)))
        ).scalar_one()
        assert row.quantity == -3
        assert row.refund_of_event_id == sale.event_id
        assert row.square_refund_id == "REFUND_1"
        assert row.window_start_date == date(2026, 5, 1)
        assert row.window_end_date == date(2027, 5, 1)

        again = await ledger.record_refund(
            refund_id="REFUND_2",
            order_id="ORDER_A",
            return_lines=[ReturnLine(uid="RL_9", source_line_item_uid="LINE_1", variation_id=None, quantity=1)],
        )
        assert again.created_event_ids == []


@pytest.mark.asyncio
async def test_refund_for_untracked_order_is_a_no_op(session_factory, merchant) -> None:
    async with session_factory() as session:
        ledger = PurchaseLedger(session, merchant_id=merchant.id)
        outcome = await ledger.record_refund(
            refund_id="REFUND_1",
            order_id="ORDER_UNKNOWN",
            return_lines=[ReturnLine(uid="RL_1", source_line_item_uid=None, variation_id="VAR_LARGE", quantity=1)],
        )
        assert outcome.created_event_ids == []
        assert outcome.duplicates == 0


@pytest.mark.asyncio
async def test_record_purchase_validates_input(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        ledger = PurchaseLedger(session, merchant_id=merchant.id)
        with pytest.raises(LoyaltyValidationError):
            await ledger.record_purchase(
                offer=offer,
                customer_id="",
                order_id="ORDER_A",
                variation_id="VAR_LARGE",
                quantity=1,
                purchased_at=datetime.now(timezone.utc),
            )
        with pytest.raises(LoyaltyValidationError):
            await ledger.record_purchase(
                offer=offer,
                customer_id="cust_1",
                order_id="ORDER_A",
                variation_id="VAR_LARGE",
                quantity=0,
                purchased_at=datetime.now(timezone.utc),
            )

    with pytest.raises(LoyaltyValidationError):
        PurchaseLedger(None, merchant_id=None)


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert add_months(date(2027, 12, 15), 3) == date(2028, 3, 15)
    assert add_months(date(2028, 2, 29), 12) == date(2029, 2, 28)
    assert add_months(datetime(2026, 8, 31, 9, 0, tzinfo=timezone.utc), 1) == datetime(
        2026, 9, 30, 9, 0, tzinfo=timezone.utc
    )


@pytest.mark.asyncio
async def test_return_listed_again_on_later_refund_is_not_counted_twice(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        ledger = PurchaseLedger(session, merchant_id=merchant.id)
        await ledger.record_purchase(
            offer=offer,
            customer_id="cust_1",
            order_id="ORDER_A",
            variation_id="VAR_LARGE",
            quantity=3,
            purchased_at=datetime(2026, 5, 1, tzinfo=timezone.utc),
            line_item_uid="LINE_1",
        )
        first_return = ReturnLine(
            uid="RL_1", source_line_item_uid="LINE_1", variation_id=None, quantity=1, return_uid="RET_1"
        )
        second_return = ReturnLine(
            uid="RL_2", source_line_item_uid="LINE_1", variation_id=None, quantity=1, return_uid="RET_2"
        )

        first = await ledger.record_refund(refund_id="REF_1", order_id="ORDER_A", return_lines=[first_return])
        second = await ledger.record_refund(
            refund_id="REF_2", order_id="ORDER_A", return_lines=[first_return, second_return]
        )
        await session.commit()

        assert len(first.created_event_ids) == 1
        assert len(second.created_event_ids) == 1
        assert second.duplicates == 1
        net = (
            await session.execute(
                select(func.sum(LoyaltyPurchaseEvent.quantity)).where(LoyaltyPurchaseEvent.square_order_id == "ORDER_A")
            )
        ).scalar_one()
        assert net == 1
