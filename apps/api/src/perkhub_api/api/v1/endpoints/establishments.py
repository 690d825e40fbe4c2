from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from perkhub_api.db.session import get_session
from perkhub_api.services.establishments import EstablishmentListingService


router = APIRouter(prefix="/establishments", tags=["establishments"])


class PublicEstablishmentResponse(BaseModel):
    id: UUID
    name: str
    discountDescription: Optional[str]


class PublicListingResponse(BaseModel):
    source: Literal["fresh", "cache", "stale"]
    cachedAt: datetime
    establishments: List[PublicEstablishmentResponse]


def get_listing_service(request: Request) -> EstablishmentListingService:
    return request.app.state.establishment_listing


@router.get("/public", response_model=PublicListingResponse)
async def list_public_establishments(
    service: EstablishmentListingService = Depends(get_listing_service),
    db: AsyncSession = Depends(get_session),
) -> PublicListingResponse:
    lookup = await service.list_public(db)
    return PublicListingResponse(
        source=lookup.source,
        cachedAt=lookup.cached_at,
        establishments=[
            PublicEstablishmentResponse(id=item.id, name=item.name, discountDescription=item.discount_description)
            for item in lookup.value
        ],
    )
