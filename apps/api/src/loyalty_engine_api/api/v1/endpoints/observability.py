from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from loyalty_engine_api.api.dependencies.security import require_internal_api_key
from loyalty_engine_api.observability.loyalty import get_loyalty_store

router = APIRouter(prefix="/observability", tags=["observability"])


@router.get("/loyalty", dependencies=[Depends(require_internal_api_key)])
async def loyalty_snapshot(request: Request) -> dict[str, object]:
    """In-process loyalty counters plus the order cache size."""

    payload = get_loyalty_store().snapshot().as_dict()
    cache = getattr(request.app.state, "order_cache", None)
    payload["orderCacheSize"] = len(cache) if cache is not None else 0
    return payload
