"""Square webhook receiver."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from loguru import logger

from loyalty_engine_api.core.settings import settings
from loyalty_engine_api.services.webhooks import WebhookEventRouter

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def square_signature(body: bytes, *, signature_key: str, notification_url: str) -> str:
    digest = hmac.new(signature_key.encode("utf-8"), notification_url.encode("utf-8") + body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_square_signature(body: bytes, signature: str | None, *, signature_key: str, notification_url: str) -> bool:
    if not signature:
        return False
    expected = square_signature(body, signature_key=signature_key, notification_url=notification_url)
    return hmac.compare_digest(expected, signature)


def get_webhook_router(request: Request) -> WebhookEventRouter:
    webhook_router = getattr(request.app.state, "webhook_router", None)
    if webhook_router is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook processing unavailable")
    return webhook_router


@router.post("/square")
async def square_webhook(
    request: Request,
    webhook_router: WebhookEventRouter = Depends(get_webhook_router),
) -> dict[str, Any]:
    """Verify, dedupe, and process a Square notification."""

    body = await request.body()
    if settings.square_webhook_signature_key:
        signature = request.headers.get("x-square-hmacsha256-signature")
        if not verify_square_signature(
            body,
            signature,
            signature_key=settings.square_webhook_signature_key,
            notification_url=settings.square_webhook_notification_url,
        ):
            logger.bind(category="LOYALTY:WEBHOOK").warning("Rejected webhook with invalid signature")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Square signature")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload body") from exc
    if not isinstance(payload, dict) or not payload.get("type"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event type")

    return await webhook_router.process(payload)
