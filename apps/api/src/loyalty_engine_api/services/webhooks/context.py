"""Normalized view of a Square webhook delivery."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping
from uuid import UUID


@dataclass(slots=True)
class WebhookContext:
    event_type: str
    data: dict[str, Any] = field(default_factory=dict)
    merchant_id: UUID | None = None
    entity_id: str | None = None
    event_id: str | None = None
    square_merchant_id: str | None = None

    @classmethod
    def from_square_payload(cls, payload: Mapping[str, Any], *, merchant_id: UUID | None) -> "WebhookContext":
        """Build a context from the raw body Square posts to the notification URL."""

        data = payload.get("data") or {}
        return cls(
            event_type=payload.get("type") or "",
            data=dict(data.get("object") or {}),
            merchant_id=merchant_id,
            entity_id=data.get("id"),
            event_id=payload.get("event_id"),
            square_merchant_id=payload.get("merchant_id"),
        )


__all__ = ["WebhookContext"]
