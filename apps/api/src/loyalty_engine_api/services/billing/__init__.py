"""Billing domain services."""

from .subscription_bridge import SQUARE_STATUS_MAP, SubscriptionBridge, map_square_status

__all__ = ["SQUARE_STATUS_MAP", "SubscriptionBridge", "map_square_status"]
