"""SQLAlchemy models package."""

from .merchant import Merchant, MerchantSubscriptionStatus  # noqa: F401
from .user import User, UserMerchant  # noqa: F401
from .subscriber import Subscriber  # noqa: F401
from .loyalty import (  # noqa: F401
    LoyaltyAuditAction,
    LoyaltyAuditEvent,
    LoyaltyCustomerOfferLock,
    LoyaltyOffer,
    LoyaltyOrderResult,
    LoyaltyProcessedOrder,
    LoyaltyPurchaseEvent,
    LoyaltyQualifyingVariation,
    LoyaltyReward,
    LoyaltyRewardAllocation,
    LoyaltyRewardStatus,
)
from .webhook_event import WebhookEvent, WebhookEventStatus  # noqa: F401
