"""Diagnostics API routes."""

from fastapi import APIRouter, Depends

from .deps import get_ai_extractor

router = APIRouter()


@router.get("/ai")
async def ai_diagnostics(ai_extractor=Depends(get_ai_extractor)):
    """Send a minimal request to the extraction model and report latency."""
    return await ai_extractor.test_connection()
