# This project was developed with assistance from AI tools.
"""Health check endpoint."""

from fastapi import APIRouter

from ..services.access import get_access_engine

router = APIRouter()


@router.get("/")
async def health_check() -> dict:
    engine = get_access_engine()
    return {
        "status": "ok",
        "workflows": len(engine.registry),
        "decision_cache_entries": len(engine.cache),
    }
