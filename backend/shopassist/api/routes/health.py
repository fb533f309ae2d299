from fastapi import APIRouter
from sqlalchemy import text

from shopassist.core.config import settings
from shopassist.db.session import engine

router = APIRouter()

@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.PROJECT_NAME}

@router.get("/health/db")
async def database_health():
    """Readiness probe: database reachable and pgvector installed."""
    async with engine.connect() as conn:
        version = await conn.scalar(text("SELECT extversion FROM pg_extension WHERE extname = 'vector'"))
    return {"status": "healthy" if version else "degraded", "pgvector": version}
