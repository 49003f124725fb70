"""Health probe."""
from __future__ import annotations

from fastapi import APIRouter

from ..schemas.envelope import ApiResponse

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> ApiResponse:
    return ApiResponse.success({"status": "healthy"})
