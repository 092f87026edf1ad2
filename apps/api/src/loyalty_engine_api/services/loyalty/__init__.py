"""Loyalty service exports."""

from .errors import (  # noqa: F401
    LoyaltyError,
    LoyaltyNotFoundError,
    LoyaltyValidationError,
    RewardAlreadyRedeemedError,
    RewardExpiredError,
    RewardInvalidStateError,
    RewardRedemptionError,
)
from .identification import (  # noqa: F401
    IDENTIFICATION_CHAIN,
    CustomerIdentifier,
    IdentificationResult,
    IdentificationStrategy,
)
from .offers import OfferCatalog, QualifyingVariationInput  # noqa: F401
from .order_cache import OrderCacheEntry, OrderProcessingCache  # noqa: F401
from .order_intake import LoyaltyOrderIntake, OrderIntakeResult, RefundIntakeResult  # noqa: F401
from .progress import CustomerProgressProjector, CustomerProgressSnapshot, OfferProgress  # noqa: F401
from .purchases import PurchaseLedger, RecordedPurchase, RecordedRefund, ReturnLine  # noqa: F401
from .rewards import ExpiryCorrection, RewardLifecycleManager, RewardStats  # noqa: F401

__all__ = [
    "CustomerIdentifier",
    "CustomerProgressProjector",
    "CustomerProgressSnapshot",
    "ExpiryCorrection",
    "IDENTIFICATION_CHAIN",
    "IdentificationResult",
    "IdentificationStrategy",
    "LoyaltyError",
    "LoyaltyNotFoundError",
    "LoyaltyOrderIntake",
    "LoyaltyValidationError",
    "OfferCatalog",
    "OfferProgress",
    "OrderCacheEntry",
    "OrderIntakeResult",
    "OrderProcessingCache",
    "PurchaseLedger",
    "QualifyingVariationInput",
    "RecordedPurchase",
    "RecordedRefund",
    "RefundIntakeResult",
    "ReturnLine",
    "RewardAlreadyRedeemedError",
    "RewardExpiredError",
    "RewardInvalidStateError",
    "RewardLifecycleManager",
    "RewardRedemptionError",
    "RewardStats",
]
