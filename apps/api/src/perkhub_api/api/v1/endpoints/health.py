from __future__ import annotations

from fastapi import APIRouter

from perkhub_api.core.settings import settings


router = APIRouter()


@router.get("/health", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok", "environment": settings.environment}
