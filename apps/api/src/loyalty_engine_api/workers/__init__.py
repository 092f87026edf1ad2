"""Background workers supporting async processing."""

from .reward_expiry import RewardExpiryWorker

__all__ = ["RewardExpiryWorker"]
