from uuid import uuid4

from loyalty_engine_api.observability.loyalty import get_loyalty_store
from loyalty_engine_api.services.loyalty import OrderCacheEntry, OrderProcessingCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = OrderProcessingCache(ttl_seconds=120, max_entries=10, clock=clock)
    merchant_id = uuid4()

    cache.set("ORDER_1", merchant_id, OrderCacheEntry(customer_id="cust_1", points_awarded=True))
    clock.advance(119)
    assert cache.get("ORDER_1", merchant_id) == OrderCacheEntry(customer_id="cust_1", points_awarded=True)

    clock.advance(2)
    assert cache.get("ORDER_1", merchant_id) is None
    assert len(cache) == 0
    assert cache.get("ORDER_2", merchant_id) is None

    assert get_loyalty_store().snapshot().order_cache == {"hit": 1, "expired": 1, "miss": 1}


def test_keys_are_scoped_by_merchant() -> None:
    cache = OrderProcessingCache(ttl_seconds=60, max_entries=10, clock=FakeClock())
    first, second = uuid4(), uuid4()

    cache.set("ORDER_1", first, OrderCacheEntry(customer_id="cust_1"))

    assert cache.get("ORDER_1", second) is None
    assert cache.get("ORDER_1", first).customer_id == "cust_1"


def test_update_merges_and_restarts_ttl() -> None:
    clock = FakeClock()
    cache = OrderProcessingCache(ttl_seconds=60, max_entries=10, clock=clock)
    merchant_id = uuid4()

    cache.set("ORDER_1", merchant_id, OrderCacheEntry(customer_id="cust_1"))
    clock.advance(50)
    updated = cache.update("ORDER_1", merchant_id, redemption_checked=True)
    clock.advance(50)

    assert updated == OrderCacheEntry(customer_id="cust_1", redemption_checked=True)
    assert cache.get("ORDER_1", merchant_id) == updated

    blank = cache.update("ORDER_2", merchant_id, points_awarded=True)
    assert blank.customer_id is None
    assert blank.points_awarded is True


def test_oldest_entries_are_evicted_beyond_capacity() -> None:
    cache = OrderProcessingCache(ttl_seconds=60, max_entries=2, clock=FakeClock())
    merchant_id = uuid4()

    for order_id in ("ORDER_1", "ORDER_2", "ORDER_3"):
        cache.set(order_id, merchant_id, OrderCacheEntry())

    assert len(cache) == 2
    assert cache.get("ORDER_1", merchant_id) is None
    assert cache.get("ORDER_3", merchant_id) is not None


def test_prune_invalidate_and_clear() -> None:
    clock = FakeClock()
    cache = OrderProcessingCache(ttl_seconds=10, max_entries=10, clock=clock)
    merchant_id = uuid4()

    cache.set("ORDER_1", merchant_id, OrderCacheEntry())
    clock.advance(5)
    cache.set("ORDER_2", merchant_id, OrderCacheEntry())
    cache.set("ORDER_3", merchant_id, OrderCacheEntry())
    clock.advance(6)

    assert cache.prune() == 1
    cache.invalidate("ORDER_2", merchant_id)
    assert len(cache) == 1

    cache.clear()
    assert len(cache) == 0
