from datetime import datetime, timezone

import pytest

from loyalty_engine_api.models.loyalty import LoyaltyReward, LoyaltyRewardStatus
from loyalty_engine_api.observability.loyalty import get_loyalty_store
from loyalty_engine_api.services.loyalty import (
    IDENTIFICATION_CHAIN,
    CustomerIdentifier,
    IdentificationStrategy,
)
from loyalty_engine_api.services.square.client import SquareApiError


class FakeSquareClient:
    def __init__(
        self,
        *,
        events=None,
        accounts=None,
        phone_matches=None,
        email_matches=None,
        fail_events: bool = False,
    ) -> None:
        self.events = events or []
        self.accounts = accounts or {}
        self.phone_matches = phone_matches or {}
        self.email_matches = email_matches or {}
        self.fail_events = fail_events
        self.calls: list[tuple[str, object]] = []

    async def search_loyalty_events(self, query, *, limit=30):
        self.calls.append(("search_loyalty_events", query))
        if self.fail_events:
            raise SquareApiError("Square API error 500", status=500, endpoint="/loyalty/events/search")
        return self.events[:limit]

    async def get_loyalty_account(self, account_id):
        self.calls.append(("get_loyalty_account", account_id))
        return self.accounts.get(account_id)

    async def search_customers_by_phone(self, phone):
        self.calls.append(("search_customers_by_phone", phone))
        return self.phone_matches.get(phone, [])

    async def search_customers_by_email(self, email):
        self.calls.append(("search_customers_by_email", email))
        return self.email_matches.get(email, [])


@pytest.mark.asyncio
async def test_order_customer_id_wins_without_api_calls(session_factory, merchant) -> None:
    client = FakeSquareClient()
    async with session_factory() as session:
        identifier = CustomerIdentifier(session, merchant_id=merchant.id, client=client)
        result = await identifier.identify(
            {"id": "ORDER_1", "customer_id": "cust_order", "tenders": [{"customer_id": "cust_tender"}]}
        )

    assert result.customer_id == "cust_order"
    assert result.strategy == IdentificationStrategy.ORDER_CUSTOMER_ID
    assert result.attempted == (IdentificationStrategy.ORDER_CUSTOMER_ID,)
    assert client.calls == []
    assert get_loyalty_store().snapshot().identification == {"order_customer_id": 1}


@pytest.mark.asyncio
async def test_tender_customer_is_second_in_chain(session_factory, merchant) -> None:
    async with session_factory() as session:
        identifier = CustomerIdentifier(session, merchant_id=merchant.id, client=None)
        result = await identifier.identify({"id": "ORDER_1", "tenders": [{"id": "T1"}, {"customer_id": "cust_tender"}]})

    assert result.customer_id == "cust_tender"
    assert result.strategy == IdentificationStrategy.TENDER_CUSTOMER_ID


@pytest.mark.asyncio
async def test_loyalty_event_resolves_account_customer(session_factory, merchant) -> None:
    client = FakeSquareClient(
        events=[{"loyalty_account_id": "ACCT_1"}],
        accounts={"ACCT_1": {"id": "ACCT_1", "customer_id": "cust_loyalty"}},
    )
    async with session_factory() as session:
        identifier = CustomerIdentifier(session, merchant_id=merchant.id, client=client)
        result = await identifier.identify({"id": "ORDER_1"})

    assert result.customer_id == "cust_loyalty"
    assert result.strategy == IdentificationStrategy.LOYALTY_API
    assert client.calls[0] == (
        "search_loyalty_events",
        {"filter": {"order_filter": {"order_id": "ORDER_1"}}},
    )


@pytest.mark.asyncio
async def test_api_failure_falls_through_to_fulfillment_recipient(session_factory, merchant) -> None:
    client = FakeSquareClient(
        fail_events=True,
        phone_matches={"+15551234567": [{"id": "cust_phone"}]},
    )
    order = {
        "id": "ORDER_1",
        "rewards": [{"id": "REWARD_1"}],
        "fulfillments": [{"pickup_details": {"recipient": {"phone_number": "+1 (555) 123-4567"}}}],
    }
    async with session_factory() as session:
        identifier = CustomerIdentifier(session, merchant_id=merchant.id, client=client)
        result = await identifier.identify(order)

    assert result.customer_id == "cust_phone"
    assert result.strategy == IdentificationStrategy.FULFILLMENT_RECIPIENT
    assert result.attempted == IDENTIFICATION_CHAIN[:5]


@pytest.mark.asyncio
async def test_email_lookup_is_normalized(session_factory, merchant) -> None:
    client = FakeSquareClient(email_matches={"pat@example.com": [{"id": "cust_email"}]})
    order = {
        "id": "ORDER_1",
        "fulfillments": [{"shipment_details": {"recipient": {"email_address": " Pat@Example.com "}}}],
    }
    async with session_factory() as session:
        result = await CustomerIdentifier(session, merchant_id=merchant.id, client=client).identify(order)

    assert result.customer_id == "cust_email"
    assert ("search_customers_by_email", "pat@example.com") in client.calls


@pytest.mark.asyncio
async def test_loyalty_discount_maps_back_to_reward_owner(session_factory, merchant, offer) -> None:
    async with session_factory() as session:
        session.add(
            LoyaltyReward(
                merchant_id=merchant.id,
                offer_id=offer.id,
                square_customer_id="cust_reward",
                status=LoyaltyRewardStatus.EARNED,
                progress_quantity=12,
                earned_at=datetime.now(timezone.utc),
                square_discount_id="DISCOUNT_1",
            )
        )
        await session.commit()

        identifier = CustomerIdentifier(session, merchant_id=merchant.id, client=None)
        result = await identifier.identify({"id": "ORDER_1", "discounts": [{"catalog_object_id": "DISCOUNT_1"}]})

    assert result.customer_id == "cust_reward"
    assert result.strategy == IdentificationStrategy.LOYALTY_DISCOUNT


@pytest.mark.asyncio
async def test_unidentified_order_reports_every_attempt(session_factory, merchant) -> None:
    async with session_factory() as session:
        identifier = CustomerIdentifier(session, merchant_id=merchant.id, client=FakeSquareClient())
        result = await identifier.identify({"id": "ORDER_1"})

    assert result.success is False
    assert result.strategy == IdentificationStrategy.NONE
    assert result.attempted == IDENTIFICATION_CHAIN
    assert get_loyalty_store().snapshot().identification == {"none": 1}


@pytest.mark.asyncio
async def test_custom_chain_limits_strategies(session_factory, merchant) -> None:
    async with session_factory() as session:
        identifier = CustomerIdentifier(
            session,
            merchant_id=merchant.id,
            client=None,
            chain=(IdentificationStrategy.TENDER_CUSTOMER_ID,),
        )
        result = await identifier.identify({"id": "ORDER_1", "customer_id": "cust_order"})

    assert result.customer_id is None
    assert result.attempted == (IdentificationStrategy.TENDER_CUSTOMER_ID,)
