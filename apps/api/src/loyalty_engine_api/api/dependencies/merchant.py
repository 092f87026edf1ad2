"""Merchant scoping for tenant-bound routes."""

from __future__ import annotations

from uuid import UUID

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.db.session import get_session
from loyalty_engine_api.models.merchant import Merchant


async def require_active_merchant(
    merchant_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> Merchant:
    """Resolve the path merchant; inactive merchants are treated as missing."""

    merchant = await db.get(Merchant, merchant_id)
    if merchant is None or not merchant.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Merchant not found",
        )
    return merchant
