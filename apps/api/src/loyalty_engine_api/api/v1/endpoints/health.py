from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.core.settings import settings
from loyalty_engine_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as exc:
        logger.warning("Readiness database probe failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail=str(exc))
        status = "error"

    worker = getattr(request.app.state, "reward_expiry_worker", None)
    if settings.reward_expiry_worker_enabled and worker is not None:
        if worker.is_running:
            components["reward_expiry_worker"] = ComponentStatus(status="ready")
        else:
            components["reward_expiry_worker"] = ComponentStatus(status="degraded", detail="Worker not running")
            status = "degraded" if status != "error" else status
    else:
        components["reward_expiry_worker"] = ComponentStatus(
            status="disabled",
            detail="Reward expiry worker disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
