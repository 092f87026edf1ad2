"""Registry of loyalty offers and the catalog variations that qualify for them."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine_api.core.settings import settings
from loyalty_engine_api.models.loyalty import LoyaltyOffer, LoyaltyQualifyingVariation
from loyalty_engine_api.services.loyalty.errors import LoyaltyNotFoundError, LoyaltyValidationError


@dataclass(slots=True)
class QualifyingVariationInput:
    variation_id: str
    item_name: str | None = None
    variation_name: str | None = None


class OfferCatalog:
    """Read-mostly access to a merchant's offers."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def list_active_offers(self, merchant_id: UUID) -> list[LoyaltyOffer]:
        stmt = (
            select(LoyaltyOffer)
            .where(LoyaltyOffer.merchant_id == merchant_id, LoyaltyOffer.is_active.is_(True))
            .order_by(LoyaltyOffer.offer_name.asc(), LoyaltyOffer.created_at.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def get_offer(self, merchant_id: UUID, offer_id: UUID) -> LoyaltyOffer:
        stmt = select(LoyaltyOffer).where(LoyaltyOffer.merchant_id == merchant_id, LoyaltyOffer.id == offer_id)
        offer = (await self._db.execute(stmt)).scalar_one_or_none()
        if offer is None:
            raise LoyaltyNotFoundError(f"Offer {offer_id} not found")
        return offer

    async def offers_by_variation(
        self, merchant_id: UUID, variation_ids: Iterable[str]
    ) -> dict[str, list[LoyaltyOffer]]:
        """Map each qualifying variation id to the active offers it counts toward."""

        wanted = {variation_id for variation_id in variation_ids if variation_id}
        if not wanted:
            return {}
        stmt = (
            select(LoyaltyQualifyingVariation.variation_id, LoyaltyOffer)
            .join(LoyaltyOffer, LoyaltyOffer.id == LoyaltyQualifyingVariation.offer_id)
            .where(
                LoyaltyQualifyingVariation.merchant_id == merchant_id,
                LoyaltyQualifyingVariation.variation_id.in_(wanted),
                LoyaltyQualifyingVariation.is_active.is_(True),
                LoyaltyOffer.merchant_id == merchant_id,
                LoyaltyOffer.is_active.is_(True),
            )
        )
        mapping: dict[str, list[LoyaltyOffer]] = defaultdict(list)
        for variation_id, offer in (await self._db.execute(stmt)).all():
            mapping[variation_id].append(offer)
        return dict(mapping)

    async def create_offer(
        self,
        merchant_id: UUID,
        *,
        offer_name: str,
        required_quantity: int,
        window_months: int | None = None,
        reward_quantity: int = 1,
        brand_name: str | None = None,
        size_group: str | None = None,
        description: str | None = None,
        variations: Sequence[QualifyingVariationInput] = (),
    ) -> LoyaltyOffer:
        if not merchant_id:
            raise LoyaltyValidationError("merchant_id is required")
        if not offer_name or not offer_name.strip():
            raise LoyaltyValidationError("offer_name is required")
        window = window_months if window_months is not None else settings.loyalty_default_window_months
        if required_quantity <= 0 or reward_quantity <= 0 or window <= 0:
            raise LoyaltyValidationError("required_quantity, reward_quantity and window_months must be positive")

        offer = LoyaltyOffer(
            merchant_id=merchant_id,
            offer_name=offer_name.strip(),
            required_quantity=required_quantity,
            reward_quantity=reward_quantity,
            window_months=window,
            brand_name=brand_name,
            size_group=size_group,
            description=description,
            is_active=True,
        )
        self._db.add(offer)
        await self._db.flush()
        for variation in variations:
            self._db.add(
                LoyaltyQualifyingVariation(
                    merchant_id=merchant_id,
                    offer_id=offer.id,
                    variation_id=variation.variation_id,
                    item_name=variation.item_name,
                    variation_name=variation.variation_name,
                )
            )
        await self._db.commit()
        stmt = select(LoyaltyOffer).where(LoyaltyOffer.id == offer.id).execution_options(populate_existing=True)
        return (await self._db.execute(stmt)).scalar_one()

    async def deactivate_offer(self, merchant_id: UUID, offer_id: UUID) -> LoyaltyOffer:
        """Soft-deactivate; offers referenced by the ledger are never deleted."""

        offer = await self.get_offer(merchant_id, offer_id)
        offer.is_active = False
        await self._db.commit()
        return offer


__all__ = ["OfferCatalog", "QualifyingVariationInput"]
