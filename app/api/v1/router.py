from fastapi import APIRouter
from app.api.v1.endpoints import health, queries


# This is the main router for API version v1 (e.g., /api/v1/...)
api_router = APIRouter()

# Include the query template endpoints (/queries...)
api_router.include_router(queries.router, tags=["queries"])

# Include health endpoints (no prefix, so /api/v1/health works)
api_router.include_router(health.router, tags=["Health"])
