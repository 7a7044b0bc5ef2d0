"""
Pricing Service - Unit prices for image sizes and the per-word speech rate.

Prices are read straight from the database on every lookup, so an admin
update is visible to the very next generation.
"""

from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import Settings, get_settings
from app.db.models import PricingSetting, TTSPricingSetting
from app.exceptions import ResourceNotFoundError
from app.models.api import GenerationKind
from app.models.domain import GenerationRequest, PriceQuote

logger = get_logger(__name__)

COST_QUANTUM = Decimal("0.0001")
SPEECH_VARIANT_KEY = "per_word"


def quantize_cost(amount: Decimal) -> Decimal:
    """Round a cost to the ledger's four-decimal precision."""
    return amount.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


class PricingService:
    """Reads and updates the price tables."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    async def get_image_price(self, size_key: str) -> tuple[Decimal, bool]:
        """
        Get the unit price for an image size.

        A failed lookup never blocks generation: unknown sizes and database
        errors both fall back to the configured default price.

        Returns:
            (price, is_fallback)
        """
        try:
            result = await self.session.execute(
                select(PricingSetting.price).where(PricingSetting.size_key == size_key)
            )
            price = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("image_pricing_lookup_failed", size_key=size_key, error=str(e))
            await self.session.rollback()
            price = None

        if price is None:
            logger.warning(
                "image_pricing_fallback",
                size_key=size_key,
                fallback_price=str(self.settings.default_image_price),
            )
            return self.settings.default_image_price, True

        return Decimal(price), False

    async def get_speech_rate(self) -> tuple[Decimal, bool]:
        """
        Get the per-word speech rate.

        Returns:
            (price_per_word, is_fallback)
        """
        try:
            result = await self.session.execute(
                select(TTSPricingSetting.price).order_by(TTSPricingSetting.created_at).limit(1)
            )
            price = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("speech_pricing_lookup_failed", error=str(e))
            await self.session.rollback()
            price = None

        if price is None:
            logger.warning(
                "speech_pricing_fallback",
                fallback_price=str(self.settings.default_speech_price_per_word),
            )
            return self.settings.default_speech_price_per_word, True

        return Decimal(price), False

    async def quote(self, request: GenerationRequest) -> PriceQuote:
        """Price a generation request at the rates currently in effect."""
        if request.kind == GenerationKind.IMAGE:
            size_key = request.size or ""
            unit_price, is_fallback = await self.get_image_price(size_key)
            return PriceQuote(
                kind=request.kind,
                variant_key=size_key,
                unit_price=unit_price,
                units=1,
                cost=quantize_cost(unit_price),
                is_fallback=is_fallback,
            )

        rate, is_fallback = await self.get_speech_rate()
        words = request.word_count
        return PriceQuote(
            kind=request.kind,
            variant_key=SPEECH_VARIANT_KEY,
            unit_price=rate,
            units=words,
            cost=quantize_cost(rate * words),
            is_fallback=is_fallback,
        )

    async def list_image_prices(self) -> list[PricingSetting]:
        """All image price rows ordered by size key."""
        result = await self.session.execute(
            select(PricingSetting).order_by(PricingSetting.size_key)
        )
        return list(result.scalars().all())

    async def list_speech_prices(self) -> list[TTSPricingSetting]:
        """The speech rate row (a list for wire compatibility)."""
        result = await self.session.execute(
            select(TTSPricingSetting).order_by(TTSPricingSetting.created_at).limit(1)
        )
        return list(result.scalars().all())

    async def update_image_prices(self, updates: list[tuple[str, Decimal]]) -> None:
        """
        Update prices of existing image sizes in one transaction.

        Raises:
            ResourceNotFoundError: A size key has no pricing row
        """
        for size_key, price in updates:
            result = await self.session.execute(
                select(PricingSetting).where(PricingSetting.size_key == size_key)
            )
            row = result.scalar_one_or_none()
            if row is None:
                await self.session.rollback()
                raise ResourceNotFoundError("Pricing entry", size_key)
            row.price = price

        await self.session.commit()
        logger.info("image_pricing_updated", sizes=[size_key for size_key, _ in updates])

    async def update_speech_prices(self, updates: list[tuple[UUID, Decimal]]) -> None:
        """
        Update the per-word speech rate row.

        Raises:
            ResourceNotFoundError: The row id does not exist
        """
        for row_id, price in updates:
            row = await self.session.get(TTSPricingSetting, row_id)
            if row is None:
                await self.session.rollback()
                raise ResourceNotFoundError("Speech pricing entry", row_id)
            row.price = price

        await self.session.commit()
        logger.info("speech_pricing_updated", rows=len(updates))
