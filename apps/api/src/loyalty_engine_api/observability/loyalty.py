from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    rewards: Dict[str, int]
    redemption_rejections: Dict[str, int]
    purchases: Dict[str, int]
    identification: Dict[str, int]
    order_cache: Dict[str, int]
    webhooks: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "rewards": dict(self.rewards),
            "redemptionRejections": dict(self.redemption_rejections),
            "purchases": dict(self.purchases),
            "identification": dict(self.identification),
            "orderCache": dict(self.order_cache),
            "webhooks": dict(self.webhooks),
        }


class LoyaltyObservabilityStore:
    """In-process counters for the loyalty pipeline."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._rewards: Dict[str, int] = defaultdict(int)
        self._rejections: Dict[str, int] = defaultdict(int)
        self._purchases: Dict[str, int] = defaultdict(int)
        self._identification: Dict[str, int] = defaultdict(int)
        self._order_cache: Dict[str, int] = defaultdict(int)
        self._webhooks: Dict[str, int] = defaultdict(int)

    def record_reward_transition(self, status: str) -> None:
        with self._lock:
            self._rewards[status] += 1

    def record_redemption_rejection(self, reason: str) -> None:
        with self._lock:
            self._rejections[reason] += 1

    def record_purchase_events(self, *, recorded: int, duplicates: int = 0, refunds: int = 0) -> None:
        with self._lock:
            self._purchases["recorded"] += recorded
            self._purchases["duplicates"] += duplicates
            self._purchases["refunds"] += refunds

    def record_identification(self, strategy: str) -> None:
        with self._lock:
            self._identification[strategy] += 1

    def record_cache_lookup(self, outcome: str) -> None:
        with self._lock:
            self._order_cache[outcome] += 1

    def record_webhook(self, event_type: str, status: str) -> None:
        with self._lock:
            self._webhooks[f"{event_type}:{status}"] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                rewards=dict(self._rewards),
                redemption_rejections=dict(self._rejections),
                purchases=dict(self._purchases),
                identification=dict(self._identification),
                order_cache=dict(self._order_cache),
                webhooks=dict(self._webhooks),
            )

    def reset(self) -> None:
        with self._lock:
            self._rewards.clear()
            self._rejections.clear()
            self._purchases.clear()
            self._identification.clear()
            self._order_cache.clear()
            self._webhooks.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
