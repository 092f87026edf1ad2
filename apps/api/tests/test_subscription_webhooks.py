import pytest

from loyalty_engine_api.models.merchant import Merchant, MerchantSubscriptionStatus
from loyalty_engine_api.models.subscriber import Subscriber
from loyalty_engine_api.models.user import User, UserMerchant
from loyalty_engine_api.services.billing import SubscriptionBridge, map_square_status
from loyalty_engine_api.services.webhooks import SubscriptionWebhookHandler, WebhookContext


def test_square_statuses_map_to_merchant_access() -> None:
    assert map_square_status("ACTIVE") == MerchantSubscriptionStatus.ACTIVE
    assert map_square_status("canceled") == MerchantSubscriptionStatus.CANCELLED
    assert map_square_status("PAUSED") == MerchantSubscriptionStatus.SUSPENDED
    assert map_square_status("DEACTIVATED") == MerchantSubscriptionStatus.CANCELLED
    assert map_square_status("PENDING") is None
    assert map_square_status(None) is None


@pytest.mark.asyncio
async def test_subscriber_is_linked_by_owner_email(session_factory, merchant) -> None:
    async with session_factory() as session:
        owner = User(email="Owner@CornerPets.example")
        session.add(owner)
        await session.flush()
        session.add(UserMerchant(user_id=owner.id, merchant_id=merchant.id, is_primary=True))
        subscriber = Subscriber(email=" owner@cornerpets.example", square_customer_id="SQ_CUST_1")
        session.add(subscriber)
        await session.commit()

        bridge = SubscriptionBridge(session)
        assert await bridge.resolve_merchant_id(subscriber) == merchant.id
        assert subscriber.merchant_id == merchant.id


@pytest.mark.asyncio
async def test_platform_owner_is_never_suspended(session_factory) -> None:
    async with session_factory() as session:
        owner = Merchant(
            business_name="Platform HQ",
            square_merchant_id="MLSQ_HQ",
            subscription_status=MerchantSubscriptionStatus.PLATFORM_OWNER,
        )
        session.add(owner)
        await session.commit()

        bridge = SubscriptionBridge(session)
        await bridge.suspend_merchant(owner.id)
        await bridge.cancel_merchant(owner.id)
        await session.commit()

        assert owner.subscription_status == MerchantSubscriptionStatus.PLATFORM_OWNER
        assert owner.is_active is True


@pytest.mark.asyncio
async def test_payment_failure_suspends_then_payment_restores(session_factory, merchant) -> None:
    async with session_factory() as session:
        session.add(
            Subscriber(
                email="owner@cornerpets.example",
                square_customer_id="SQ_CUST_1",
                square_subscription_id="SUB_1",
                merchant_id=merchant.id,
            )
        )
        await session.commit()

    handler = SubscriptionWebhookHandler(session_factory)
    failed = await handler.handle(
        WebhookContext(
            event_type="invoice.payment_failed",
            data={"invoice": {"id": "INV_1", "subscription_id": "SUB_1"}},
        )
    )
    assert failed["merchant_status"] == "suspended"
    assert failed["subscriber_status"] == "suspended"

    async with session_factory() as session:
        stored = await session.get(Merchant, merchant.id)
        assert stored.is_active is False

    paid = await handler.handle(
        WebhookContext(
            event_type="invoice.payment_made",
            data={"invoice": {"id": "INV_2", "primary_recipient": {"customer_id": "SQ_CUST_1"}}},
        )
    )
    assert paid["merchant_id"] == str(merchant.id)
    assert paid["merchant_status"] == "active"


@pytest.mark.asyncio
async def test_subscription_updated_and_customer_deleted(session_factory, merchant) -> None:
    async with session_factory() as session:
        session.add(Subscriber(email="owner@cornerpets.example", square_customer_id="SQ_CUST_1", merchant_id=merchant.id))
        await session.commit()

    handler = SubscriptionWebhookHandler(session_factory)
    paused = await handler.handle(
        WebhookContext(
            event_type="subscription.updated",
            data={"subscription": {"id": "SUB_9", "customer_id": "SQ_CUST_1", "status": "PAUSED"}},
        )
    )
    pending = await handler.handle(
        WebhookContext(
            event_type="subscription.updated",
            data={"subscription": {"id": "SUB_9", "customer_id": "SQ_CUST_1", "status": "PENDING"}},
        )
    )
    deleted = await handler.handle(
        WebhookContext(event_type="customer.deleted", data={}, entity_id="SQ_CUST_1")
    )

    assert paused["merchant_status"] == "suspended"
    assert pending["skipped"] == "unmapped_status"
    assert deleted["merchant_status"] == "cancelled"

    async with session_factory() as session:
        stored = await session.get(Merchant, merchant.id)
        assert stored.subscription_status == MerchantSubscriptionStatus.CANCELLED


@pytest.mark.asyncio
async def test_unknown_subscriber_is_skipped(session_factory) -> None:
    handler = SubscriptionWebhookHandler(session_factory)
    result = await handler.handle(
        WebhookContext(event_type="subscription.created", data={"subscription": {"id": "SUB_X", "customer_id": "NOPE"}})
    )
    assert result == {"event_type": "subscription.created", "skipped": "subscriber_not_found"}
