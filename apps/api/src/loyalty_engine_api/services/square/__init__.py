"""Square API access."""

from .client import SquareApiError, SquareClient, SquareRateLimitError  # noqa: F401

__all__ = ["SquareApiError", "SquareClient", "SquareRateLimitError"]
