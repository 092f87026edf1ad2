"""Reward expiry sweep across merchants."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.models.merchant import Merchant
from loyalty_engine_api.services.loyalty.rewards import RewardLifecycleManager
from loyalty_engine_api.services.loyalty.windows import utcnow


# meta: job: reward-expiry

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def _open(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    return maybe_session if isinstance(maybe_session, AsyncSession) else await maybe_session


async def run_reward_expiry(
    *,
    session_factory: SessionFactory,
    reference_time: datetime | None = None,
) -> Dict[str, Any]:
    """Expire lapsed earned rewards for every active merchant.

    Each merchant is swept in its own session so one failure does not block the rest.
    """

    now = reference_time or utcnow()
    async with await _open(session_factory) as session:
        merchant_ids = list(
            (await session.execute(select(Merchant.id).where(Merchant.is_active.is_(True)))).scalars().all()
        )

    summary: Dict[str, Any] = {"merchants": len(merchant_ids), "expired": 0, "failed_merchants": 0}
    for merchant_id in merchant_ids:
        async with await _open(session_factory) as session:
            manager = RewardLifecycleManager(session, merchant_id=merchant_id)
            try:
                expired = await manager.expire_rewards(reference_time=now)
            except SQLAlchemyError as exc:
                summary["failed_merchants"] += 1
                logger.bind(category="LOYALTY:REWARD").error(
                    "Reward expiry failed for merchant", merchant_id=str(merchant_id), error=str(exc)
                )
                continue
            summary["expired"] += len(expired)

    logger.bind(category="LOYALTY:REWARD", summary=summary).info("Reward expiry sweep completed")
    return summary


__all__ = ["run_reward_expiry"]
