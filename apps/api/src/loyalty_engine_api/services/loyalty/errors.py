"""Loyalty error taxonomy. Each error carries a stable ``code`` for API consumers."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID


class LoyaltyError(RuntimeError):
    code = "loyalty_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code:
            self.code = code


class LoyaltyValidationError(LoyaltyError):
    """Missing or malformed identifiers supplied by the caller."""

    code = "validation_error"


class LoyaltyNotFoundError(LoyaltyError):
    code = "not_found"


class RewardRedemptionError(LoyaltyError):
    """Business-rule rejection of a redemption attempt."""

    def __init__(self, message: str, *, reward_id: UUID) -> None:
        super().__init__(message)
        self.reward_id = reward_id


class RewardAlreadyRedeemedError(RewardRedemptionError):
    code = "already_redeemed"

    def __init__(self, reward_id: UUID, redeemed_at: datetime | None) -> None:
        super().__init__(f"Reward {reward_id} was already redeemed", reward_id=reward_id)
        self.redeemed_at = redeemed_at


class RewardExpiredError(RewardRedemptionError):
    code = "expired"

    def __init__(self, reward_id: UUID, expires_at: datetime | None) -> None:
        super().__init__(f"Reward {reward_id} expired", reward_id=reward_id)
        self.expires_at = expires_at


class RewardInvalidStateError(RewardRedemptionError):
    code = "invalid_state"

    def __init__(self, reward_id: UUID, status: str) -> None:
        super().__init__(f"Reward {reward_id} is {status}, expected earned", reward_id=reward_id)
        self.status = status


__all__ = [
    "LoyaltyError",
    "LoyaltyNotFoundError",
    "LoyaltyValidationError",
    "RewardAlreadyRedeemedError",
    "RewardExpiredError",
    "RewardInvalidStateError",
    "RewardRedemptionError",
]
