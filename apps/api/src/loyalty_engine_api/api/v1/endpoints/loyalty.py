"""API endpoints for customer progress, rewards, and offer management."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.api.dependencies.merchant import require_active_merchant
from loyalty_engine_api.api.dependencies.security import require_internal_api_key
from loyalty_engine_api.db.session import get_session
from loyalty_engine_api.models.loyalty import LoyaltyReward
from loyalty_engine_api.models.merchant import Merchant
from loyalty_engine_api.schemas.loyalty import (
    CustomerProgressResponse,
    CustomerRewardsResponse,
    ExpireRewardsResponse,
    ExpiryCorrectionRequest,
    ExpiryCorrectionResponse,
    OfferCreateRequest,
    OfferResponse,
    RedeemableRewardResponse,
    RedeemRewardRequest,
    RedemptionRejection,
    RewardResponse,
    RewardStatsResponse,
)
from loyalty_engine_api.services.loyalty import (
    CustomerProgressProjector,
    LoyaltyNotFoundError,
    LoyaltyValidationError,
    OfferCatalog,
    QualifyingVariationInput,
    RewardAlreadyRedeemedError,
    RewardExpiredError,
    RewardLifecycleManager,
    RewardRedemptionError,
)


router = APIRouter(
    prefix="/loyalty/merchants/{merchant_id}",
    tags=["loyalty"],
    dependencies=[Depends(require_internal_api_key)],
)


def _rejection(exc: RewardRedemptionError) -> HTTPException:
    body = RedemptionRejection(
        reason=exc.code,
        message=str(exc),
        redeemed_at=exc.redeemed_at if isinstance(exc, RewardAlreadyRedeemedError) else None,
        expires_at=exc.expires_at if isinstance(exc, RewardExpiredError) else None,
    )
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=body.model_dump(mode="json", by_alias=True))


async def _customer_reward(
    db: AsyncSession, merchant: Merchant, customer_id: str, reward_id: UUID
) -> LoyaltyReward:
    reward = await db.get(LoyaltyReward, reward_id)
    if reward is None or reward.merchant_id != merchant.id or reward.square_customer_id != customer_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reward not found")
    return reward


@router.get("/customers/{customer_id}/progress", response_model=CustomerProgressResponse)
async def customer_progress(
    customer_id: str,
    merchant: Merchant = Depends(require_active_merchant),
    db: AsyncSession = Depends(get_session),
) -> CustomerProgressResponse:
    projector = CustomerProgressProjector(db)
    try:
        snapshot = await projector.get_customer_offer_progress(merchant.id, customer_id)
    except LoyaltyValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return CustomerProgressResponse.model_validate(snapshot)


@router.get("/customers/{customer_id}/rewards", response_model=CustomerRewardsResponse)
async def customer_rewards(
    customer_id: str,
    limit: int = Query(50, ge=1, le=200),
    merchant: Merchant = Depends(require_active_merchant),
    db: AsyncSession = Depends(get_session),
) -> CustomerRewardsResponse:
    manager = RewardLifecycleManager(db, merchant_id=merchant.id)
    rewards = await manager.list_customer_rewards(customer_id, limit=limit)
    stats = await manager.get_reward_stats(customer_id)
    return CustomerRewardsResponse(
        rewards=[RewardResponse.model_validate(reward) for reward in rewards],
        stats=RewardStatsResponse(
            available=stats.available,
            redeemed=stats.redeemed,
            expired=stats.expired,
            revoked=stats.revoked,
            total=stats.total,
        ),
    )


@router.get("/customers/{customer_id}/offers/{offer_id}/redeemable", response_model=RedeemableRewardResponse)
async def redeemable_reward(
    customer_id: str,
    offer_id: UUID,
    merchant: Merchant = Depends(require_active_merchant),
    db: AsyncSession = Depends(get_session),
) -> RedeemableRewardResponse:
    manager = RewardLifecycleManager(db, merchant_id=merchant.id)
    reward = await manager.get_redeemable_reward(customer_id, offer_id)
    if reward is None:
        return RedeemableRewardResponse(redeemable=False)
    return RedeemableRewardResponse(redeemable=True, reward=RewardResponse.model_validate(reward))


@router.post("/customers/{customer_id}/rewards/{reward_id}/redeem", response_model=RewardResponse)
async def redeem_reward(
    customer_id: str,
    reward_id: UUID,
    payload: RedeemRewardRequest | None = None,
    merchant: Merchant = Depends(require_active_merchant),
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    await _customer_reward(db, merchant, customer_id, reward_id)
    manager = RewardLifecycleManager(db, merchant_id=merchant.id)
    try:
        reward = await manager.redeem_reward(reward_id, order_id=payload.order_id if payload else None)
    except RewardRedemptionError as exc:
        raise _rejection(exc) from exc
    except LoyaltyNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return RewardResponse.model_validate(reward)


@router.post("/rewards/expire", response_model=ExpireRewardsResponse)
async def expire_rewards(
    merchant: Merchant = Depends(require_active_merchant),
    db: AsyncSession = Depends(get_session),
) -> ExpireRewardsResponse:
    manager = RewardLifecycleManager(db, merchant_id=merchant.id)
    expired = await manager.expire_rewards()
    return ExpireRewardsResponse(expired_count=len(expired), reward_ids=expired)


@router.post("/rewards/{reward_id}/expiry-correction", response_model=ExpiryCorrectionResponse)
async def correct_reward_expiry(
    reward_id: UUID,
    payload: ExpiryCorrectionRequest,
    merchant: Merchant = Depends(require_active_merchant),
    db: AsyncSession = Depends(get_session),
) -> ExpiryCorrectionResponse:
    manager = RewardLifecycleManager(db, merchant_id=merchant.id)
    reward = await db.get(LoyaltyReward, reward_id)
    if reward is None or reward.merchant_id != merchant.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reward not found")
    try:
        correction = await manager.correct_reward_expiry(
            reward_id, expires_at=payload.expires_at, reason=payload.reason, actor=payload.actor
        )
    except RewardRedemptionError as exc:
        raise _rejection(exc) from exc
    except LoyaltyValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ExpiryCorrectionResponse(
        reward=RewardResponse.model_validate(correction.reward),
        previous_expires_at=correction.previous_expires_at,
        new_expires_at=correction.new_expires_at,
        transition=correction.transition,
    )


@router.get("/offers", response_model=list[OfferResponse])
async def list_offers(
    merchant: Merchant = Depends(require_active_merchant),
    db: AsyncSession = Depends(get_session),
) -> list[OfferResponse]:
    offers = await OfferCatalog(db).list_active_offers(merchant.id)
    return [OfferResponse.model_validate(offer) for offer in offers]


@router.post("/offers", response_model=OfferResponse, status_code=status.HTTP_201_CREATED)
async def create_offer(
    payload: OfferCreateRequest,
    merchant: Merchant = Depends(require_active_merchant),
    db: AsyncSession = Depends(get_session),
) -> OfferResponse:
    try:
        offer = await OfferCatalog(db).create_offer(
            merchant.id,
            offer_name=payload.offer_name,
            required_quantity=payload.required_quantity,
            reward_quantity=payload.reward_quantity,
            window_months=payload.window_months,
            brand_name=payload.brand_name,
            size_group=payload.size_group,
            description=payload.description,
            variations=[
                QualifyingVariationInput(
                    variation_id=item.variation_id,
                    item_name=item.item_name,
                    variation_name=item.variation_name,
                )
                for item in payload.variations
            ],
        )
    except LoyaltyValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return OfferResponse.model_validate(offer)


@router.delete("/offers/{offer_id}", response_model=OfferResponse)
async def deactivate_offer(
    offer_id: UUID,
    merchant: Merchant = Depends(require_active_merchant),
    db: AsyncSession = Depends(get_session),
) -> OfferResponse:
    try:
        offer = await OfferCatalog(db).deactivate_offer(merchant.id, offer_id)
    except LoyaltyNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return OfferResponse.model_validate(offer)
