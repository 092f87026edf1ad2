"""Square webhook handling."""

from .context import WebhookContext  # noqa: F401
from .order_processor import OrderWebhookProcessor, merchant_square_client  # noqa: F401
from .router import WebhookEventRouter  # noqa: F401
from .subscription_handler import SubscriptionWebhookHandler  # noqa: F401

__all__ = [
    "OrderWebhookProcessor",
    "SubscriptionWebhookHandler",
    "WebhookContext",
    "WebhookEventRouter",
    "merchant_square_client",
]
