"""Platform fee calculation per organization subscription tier"""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from shared.database.models import Organization, SubscriptionTierConfig

logger = logging.getLogger(__name__)

DEFAULT_TIER = "free"


@dataclass(frozen=True)
class TierFee:
    tier: str
    percentage: Decimal
    fixed_cents: int


DEFAULT_TIER_FEES: Dict[str, TierFee] = {
    "free": TierFee("free", Decimal("5.0"), 30),
    "pro": TierFee("pro", Decimal("3.0"), 30),
    "enterprise": TierFee("enterprise", Decimal("2.0"), 30),
}


def compute_fee(subtotal_cents: int, tier_fee: TierFee) -> int:
    """round_half_up(subtotal * percentage / 100) + fixed"""
    percentage_part = (Decimal(subtotal_cents) * tier_fee.percentage / Decimal(100)).quantize(
        Decimal(1), rounding=ROUND_HALF_UP
    )
    return int(percentage_part) + tier_fee.fixed_cents


class TierConfigCache:
    """
    Process-wide snapshot of tier fees with an explicit TTL.

    ``get()`` returns None once the snapshot is older than ``ttl_seconds``;
    ``invalidate()`` drops it immediately (e.g. after an admin edits a tier).
    """

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._fees: Optional[Dict[str, TierFee]] = None
        self._loaded_at = 0.0

    def get(self) -> Optional[Dict[str, TierFee]]:
        if self._fees is None:
            return None
        if self._clock() - self._loaded_at >= self.ttl_seconds:
            return None
        return self._fees

    def store(self, fees: Dict[str, TierFee]) -> None:
        self._fees = dict(fees)
        self._loaded_at = self._clock()

    def invalidate(self) -> None:
        self._fees = None
        self._loaded_at = 0.0


class FeeCalculator:
    """Maps (organization tier, subtotal) to the platform fee in cents.

    Lookup failures never block checkout: a missing tier, an unreadable tier
    table or an unknown organization all fall back to DEFAULT_TIER_FEES.
    Call it before any pending writes on the session; a store error rolls
    the session back.
    """

    def __init__(self, cache: Optional[TierConfigCache] = None):
        self.cache = cache or TierConfigCache(ttl_seconds=settings.TIER_CONFIG_CACHE_TTL_SECONDS)

    async def calculate_fee(self, db: AsyncSession, org_id: UUID, subtotal_cents: int) -> int:
        tier = await self._get_org_tier(db, org_id)
        tier_fee = await self.get_tier_fee(db, tier)
        fee = compute_fee(subtotal_cents, tier_fee)
        logger.debug(
            f"Fee for org {org_id}: tier={tier_fee.tier} {tier_fee.percentage}% + {tier_fee.fixed_cents} "
            f"on {subtotal_cents} = {fee}"
        )
        return fee

    async def get_tier_fee(self, db: AsyncSession, tier: str) -> TierFee:
        fees = self.cache.get()
        if fees is None:
            fees = await self._load_tier_fees(db)

        if tier in fees:
            return fees[tier]
        if tier not in DEFAULT_TIER_FEES:
            logger.warning(f"Unknown subscription tier '{tier}', using '{DEFAULT_TIER}' fees")
            tier = DEFAULT_TIER
        return DEFAULT_TIER_FEES[tier]

    async def _load_tier_fees(self, db: AsyncSession) -> Dict[str, TierFee]:
        try:
            result = await db.execute(
                select(SubscriptionTierConfig).where(SubscriptionTierConfig.is_active.is_(True))
            )
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            await db.rollback()
            # Serve defaults without caching them so the next call retries the store
            logger.warning(f"Could not load subscription tier fees, using defaults: {e}")
            return DEFAULT_TIER_FEES

        fees = {
            row.tier: TierFee(
                tier=row.tier,
                percentage=Decimal(str(row.transaction_fee_percentage)),
                fixed_cents=row.transaction_fee_fixed_cents,
            )
            for row in rows
        }
        self.cache.store(fees)
        return fees

    async def _get_org_tier(self, db: AsyncSession, org_id: UUID) -> str:
        try:
            result = await db.execute(
                select(Organization.subscription_tier).where(Organization.id == org_id)
            )
            tier = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.warning(f"Could not read tier for org {org_id}, using '{DEFAULT_TIER}': {e}")
            return DEFAULT_TIER
        return tier or DEFAULT_TIER
