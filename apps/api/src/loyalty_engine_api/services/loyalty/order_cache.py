"""Short-lived memo of per-order identification work.

Square fires several webhooks for one sale within seconds (order.created,
order.updated, payment.updated, fulfillment updates). The cache keeps the
resolved customer so later deliveries skip the identification chain. Entries
live in process memory only; after a restart the chain simply runs again.
Only the event loop touches the cache and none of its methods await.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Callable
from uuid import UUID

from loyalty_engine_api.core.settings import settings
from loyalty_engine_api.observability.loyalty import get_loyalty_store

Clock = Callable[[], float]


@dataclass(slots=True, frozen=True)
class OrderCacheEntry:
    customer_id: str | None = None
    points_awarded: bool = False
    redemption_checked: bool = False


@dataclass(slots=True)
class _CacheSlot:
    entry: OrderCacheEntry
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class OrderProcessingCache:
    """TTL cache keyed by ``(order_id, merchant_id)`` with a bounded size."""

    def __init__(
        self,
        *,
        ttl_seconds: float | None = None,
        max_entries: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.order_processing_cache_ttl_seconds
        self.max_entries = max_entries if max_entries is not None else settings.order_processing_cache_max_entries
        self._clock = clock or time.monotonic
        self._slots: OrderedDict[str, _CacheSlot] = OrderedDict()

    @staticmethod
    def key(order_id: str, merchant_id: UUID | str) -> str:
        return f"{order_id}:{merchant_id}"

    def get(self, order_id: str, merchant_id: UUID | str) -> OrderCacheEntry | None:
        key = self.key(order_id, merchant_id)
        now = self._clock()
        slot = self._slots.get(key)
        if slot is None:
            outcome, entry = "miss", None
        elif not slot.is_valid(now):
            del self._slots[key]
            outcome, entry = "expired", None
        else:
            outcome, entry = "hit", slot.entry
        get_loyalty_store().record_cache_lookup(outcome)
        return entry

    def set(self, order_id: str, merchant_id: UUID | str, entry: OrderCacheEntry) -> OrderCacheEntry:
        key = self.key(order_id, merchant_id)
        self._slots[key] = _CacheSlot(entry=entry, expires_at=self._clock() + self.ttl_seconds)
        self._slots.move_to_end(key)
        while len(self._slots) > self.max_entries:
            self._slots.popitem(last=False)
        return entry

    def update(self, order_id: str, merchant_id: UUID | str, **changes: object) -> OrderCacheEntry:
        """Merge ``changes`` into the live entry (or a blank one) and restart its TTL."""

        current = self.get(order_id, merchant_id) or OrderCacheEntry()
        return self.set(order_id, merchant_id, replace(current, **changes))

    def invalidate(self, order_id: str, merchant_id: UUID | str) -> None:
        self._slots.pop(self.key(order_id, merchant_id), None)

    def prune(self) -> int:
        now = self._clock()
        stale = [key for key, slot in self._slots.items() if not slot.is_valid(now)]
        for key in stale:
            del self._slots[key]
        return len(stale)

    def clear(self) -> None:
        self._slots.clear()

    def __len__(self) -> int:
        return len(self._slots)


__all__ = ["OrderCacheEntry", "OrderProcessingCache"]
