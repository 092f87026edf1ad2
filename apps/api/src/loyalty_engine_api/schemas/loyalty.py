from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from loyalty_engine_api.models.loyalty import LoyaltyRewardStatus


class OfferProgressResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    offer_id: UUID = Field(..., alias="offerId")
    offer_name: str = Field(..., alias="offerName")
    required_quantity: int = Field(..., alias="requiredQuantity")
    window_months: int = Field(..., alias="windowMonths")
    current_quantity: int = Field(0, alias="currentQuantity")
    remaining_quantity: int = Field(0, alias="remainingQuantity")
    window_start_date: date | None = Field(None, alias="windowStartDate")
    window_end_date: date | None = Field(None, alias="windowEndDate")
    has_earned_reward: bool = Field(False, alias="hasEarnedReward")
    earned_reward_id: UUID | None = Field(None, alias="earnedRewardId")
    total_lifetime_purchases: int = Field(0, alias="totalLifetimePurchases")
    total_rewards_earned: int = Field(0, alias="totalRewardsEarned")
    total_rewards_redeemed: int = Field(0, alias="totalRewardsRedeemed")
    last_purchase_at: datetime | None = Field(None, alias="lastPurchaseAt")


class CustomerProgressResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    merchant_id: UUID = Field(..., alias="merchantId")
    customer_id: str = Field(..., alias="customerId")
    as_of: date = Field(..., alias="asOf")
    offers: list[OfferProgressResponse] = Field(default_factory=list)


class RewardResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: UUID
    offer_id: UUID = Field(..., alias="offerId")
    square_customer_id: str = Field(..., alias="customerId")
    status: LoyaltyRewardStatus
    progress_quantity: int = Field(..., alias="progressQuantity")
    window_start_date: date | None = Field(None, alias="windowStartDate")
    window_end_date: date | None = Field(None, alias="windowEndDate")
    earned_at: datetime = Field(..., alias="earnedAt")
    redeemed_at: datetime | None = Field(None, alias="redeemedAt")
    expires_at: datetime | None = Field(None, alias="expiresAt")
    redemption_order_id: str | None = Field(None, alias="redemptionOrderId")
    revoked_at: datetime | None = Field(None, alias="revokedAt")
    revocation_reason: str | None = Field(None, alias="revocationReason")


class RewardStatsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    available: int = 0
    redeemed: int = 0
    expired: int = 0
    revoked: int = 0
    total: int = 0


class CustomerRewardsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rewards: list[RewardResponse] = Field(default_factory=list)
    stats: RewardStatsResponse


class RedeemableRewardResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    redeemable: bool
    reward: RewardResponse | None = None


class RedeemRewardRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str | None = Field(None, alias="orderId")


class RedemptionRejection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reason: str
    message: str
    redeemed_at: datetime | None = Field(None, alias="redeemedAt")
    expires_at: datetime | None = Field(None, alias="expiresAt")


class ExpireRewardsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    expired_count: int = Field(..., alias="expiredCount")
    reward_ids: list[UUID] = Field(default_factory=list, alias="rewardIds")


class ExpiryCorrectionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    expires_at: datetime | None = Field(None, alias="expiresAt")
    reason: str = Field(..., min_length=1)
    actor: str | None = None


class ExpiryCorrectionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reward: RewardResponse
    previous_expires_at: datetime | None = Field(None, alias="previousExpiresAt")
    new_expires_at: datetime | None = Field(None, alias="newExpiresAt")
    transition: str


class QualifyingVariationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    variation_id: str = Field(..., alias="variationId")
    variation_name: str | None = Field(None, alias="variationName")
    item_name: str | None = Field(None, alias="itemName")


class OfferCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    offer_name: str = Field(..., alias="offerName", min_length=1)
    required_quantity: int = Field(..., alias="requiredQuantity", gt=0)
    reward_quantity: int = Field(1, alias="rewardQuantity", gt=0)
    window_months: int | None = Field(None, alias="windowMonths", gt=0)
    brand_name: str | None = Field(None, alias="brandName")
    size_group: str | None = Field(None, alias="sizeGroup")
    description: str | None = None
    variations: list[QualifyingVariationPayload] = Field(default_factory=list)


class QualifyingVariationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    variation_id: str = Field(..., alias="variationId")
    variation_name: str | None = Field(None, alias="variationName")
    item_name: str | None = Field(None, alias="itemName")


class OfferResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: UUID
    offer_name: str = Field(..., alias="offerName")
    brand_name: str | None = Field(None, alias="brandName")
    size_group: str | None = Field(None, alias="sizeGroup")
    description: str | None = None
    required_quantity: int = Field(..., alias="requiredQuantity")
    reward_quantity: int = Field(..., alias="rewardQuantity")
    window_months: int = Field(..., alias="windowMonths")
    is_active: bool = Field(..., alias="isActive")
    variations: list[QualifyingVariationResponse] = Field(default_factory=list)
