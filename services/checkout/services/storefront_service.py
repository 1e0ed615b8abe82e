"""Storefront resolution: public identifier -> attraction, organization and seller account"""
import logging
from dataclasses import asdict, dataclass
from typing import Optional
from uuid import UUID

from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from shared.cache.redis_client import cache_get, cache_set
from shared.database.models import Attraction, PaymentAccount, StorefrontDomain
from shared.errors import AttractionNotFoundError, PaymentNotConfiguredError, PaymentNotEnabledError
from services.checkout.gateway.port import ConnectedAccount

logger = logging.getLogger(__name__)

ACTIVE_ATTRACTION_STATUS = "active"
ACTIVE_ACCOUNT_STATUS = "active"


@dataclass(frozen=True)
class Storefront:
    attraction_id: UUID
    org_id: UUID
    name: str
    slug: str


class StorefrontService:
    """Resolves verified custom domains first, then attraction slugs"""

    async def resolve(self, db: AsyncSession, identifier: str) -> Storefront:
        key = identifier.strip().lower()
        cached = await self._cache_read(key)
        if cached:
            return cached

        storefront = await self._by_domain(db, key) or await self._by_slug(db, key)
        if storefront is None:
            raise AttractionNotFoundError(identifier)

        await self._cache_write(key, storefront)
        return storefront

    async def get_payment_account(
        self, db: AsyncSession, org_id: UUID, require_enabled: bool = True
    ) -> ConnectedAccount:
        """Seller account for new charges; ``require_enabled=False`` for settling existing ones"""
        result = await db.execute(select(PaymentAccount).where(PaymentAccount.org_id == org_id))
        account = result.scalar_one_or_none()
        if account is None:
            raise PaymentNotConfiguredError()
        if require_enabled and (account.status != ACTIVE_ACCOUNT_STATUS or not account.charges_enabled):
            raise PaymentNotEnabledError()
        return ConnectedAccount(
            provider_account_id=account.provider_account_id,
            access_token=account.access_token,
        )

    async def find_org_by_account(self, db: AsyncSession, provider_account_id: str) -> Optional[UUID]:
        result = await db.execute(
            select(PaymentAccount.org_id).where(PaymentAccount.provider_account_id == provider_account_id)
        )
        return result.scalar_one_or_none()

    async def _by_domain(self, db: AsyncSession, domain: str) -> Optional[Storefront]:
        result = await db.execute(
            select(Attraction)
            .join(StorefrontDomain, StorefrontDomain.attraction_id == Attraction.id)
            .where(
                StorefrontDomain.domain == domain,
                StorefrontDomain.is_verified.is_(True),
                Attraction.status == ACTIVE_ATTRACTION_STATUS,
            )
        )
        return self._to_storefront(result.scalar_one_or_none())

    async def _by_slug(self, db: AsyncSession, slug: str) -> Optional[Storefront]:
        result = await db.execute(
            select(Attraction).where(Attraction.slug == slug, Attraction.status == ACTIVE_ATTRACTION_STATUS)
        )
        return self._to_storefront(result.scalar_one_or_none())

    @staticmethod
    def _to_storefront(attraction: Optional[Attraction]) -> Optional[Storefront]:
        if attraction is None:
            return None
        return Storefront(
            attraction_id=attraction.id,
            org_id=attraction.org_id,
            name=attraction.name,
            slug=attraction.slug,
        )

    async def _cache_read(self, key: str) -> Optional[Storefront]:
        if settings.STOREFRONT_CACHE_TTL_SECONDS <= 0:
            return None
        try:
            data = await cache_get(f"storefront:{key}")
        except (RedisError, OSError) as e:
            logger.debug(f"Storefront cache read skipped: {e}")
            return None
        if not isinstance(data, dict):
            return None
        return Storefront(
            attraction_id=UUID(data["attraction_id"]),
            org_id=UUID(data["org_id"]),
            name=data["name"],
            slug=data["slug"],
        )

    async def _cache_write(self, key: str, storefront: Storefront) -> None:
        if settings.STOREFRONT_CACHE_TTL_SECONDS <= 0:
            return
        data = {k: str(v) for k, v in asdict(storefront).items()}
        try:
            await cache_set(f"storefront:{key}", data, expire=settings.STOREFRONT_CACHE_TTL_SECONDS)
        except (RedisError, OSError) as e:
            logger.debug(f"Storefront cache write skipped: {e}")
