from datetime import UTC, datetime

from fastapi import APIRouter

router = APIRouter()


@router.get("/health", tags=["health"])
async def health_check():
    """Liveness probe"""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}
