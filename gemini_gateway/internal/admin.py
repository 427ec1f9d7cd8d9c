from __future__ import annotations

from fastapi import APIRouter, Depends

from gemini_gateway.config import Settings, get_settings

router = APIRouter(prefix="/internal", tags=["internal"])


@router.get("/healthz")
async def healthz(settings: Settings = Depends(get_settings)) -> dict[str, str]:
    return {"status": "ok", "upstream": settings.GEMINI_BASE_URL}
