"""Health check route."""

from fastapi import APIRouter


def create_health_router() -> APIRouter:
    """Create health router."""
    router = APIRouter(tags=["health"])

    @router.get("/health")
    async def health() -> dict:
        return {"ok": True}

    return router
