"""Public establishment listing served through the read-through cache."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from perkhub_api.core.settings import settings
from perkhub_api.models.establishment import Establishment, EstablishmentStatusEnum
from perkhub_api.services.cache import CacheLookup, ReadThroughCache


PUBLIC_LISTING_KEY = "establishments:public"


@dataclass(slots=True, frozen=True)
class PublicEstablishment:
    id: UUID
    name: str
    discount_description: str | None


class EstablishmentListingService:
    """Serve the anonymous establishment listing without hitting the database on every call."""

    def __init__(self, cache: ReadThroughCache, *, ttl: timedelta | None = None, limit: int | None = None) -> None:
        self._cache = cache
        self._ttl = ttl or timedelta(seconds=settings.public_listing_cache_ttl_seconds)
        self._limit = limit or settings.public_listing_limit

    async def list_public(self, session: AsyncSession) -> CacheLookup[list[PublicEstablishment]]:
        async def _load() -> list[PublicEstablishment]:
            stmt = (
                select(Establishment)
                .where(Establishment.status == EstablishmentStatusEnum.ACTIVE)
                .order_by(Establishment.name.asc())
                .limit(self._limit)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [
                PublicEstablishment(id=row.id, name=row.name, discount_description=row.discount_description)
                for row in rows
            ]

        return await self._cache.get_or_compute(PUBLIC_LISTING_KEY, self._ttl, _load)
