import logging
from datetime import datetime, timezone

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from app.core.circuit_breaker import get_all_breakers_status
from app.core.config import settings
from app.core.events import get_database, is_mongo_ready
from app.services.cache_service import cache_service

router = APIRouter()
logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _open_breakers(breakers: dict) -> list:
    return [name for name, info in breakers.items() if info["state"] == "open"]


async def _check_mongo() -> dict:
    database = get_database()
    if not is_mongo_ready() or database is None:
        return {"status": "unhealthy", "message": "Not connected"}
    try:
        await database.command("ping")
        return {"status": "healthy", "message": "Connected and responsive"}
    except Exception as e:
        logger.error(f"❌ MongoDB health check failed: {e}")
        return {"status": "unhealthy", "message": f"Ping failed: {e}"}


async def _check_redis() -> dict:
    if not cache_service.is_enabled:
        return {"status": "disabled", "message": "Running without cache"}
    try:
        await cache_service.get_client().ping()
        return {"status": "healthy", "message": "Connected and responsive"}
    except Exception as e:
        logger.error(f"❌ Redis health check failed: {e}")
        return {"status": "unhealthy", "message": f"Ping failed: {e}"}


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """
    Full dependency report.

    MongoDB and Redis are pinged and every circuit breaker is listed. A
    disabled cache does not count against health; an unhealthy dependency
    or an open breaker turns the answer into a 503 "degraded".
    """
    checks = {"mongodb": await _check_mongo(), "redis": await _check_redis()}
    breakers = get_all_breakers_status()

    healthy = all(check["status"] != "unhealthy" for check in checks.values())
    for name in _open_breakers(breakers):
        logger.warning(f"⚡ Circuit breaker '{name}' is OPEN")
        healthy = False

    body = {
        "service": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
        "status": "healthy" if healthy else "degraded",
        "timestamp": _now(),
        "checks": checks,
        "circuit_breakers": breakers,
    }
    code = status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=body)


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check():
    """Ready once the template store answers. The cache is optional."""
    mongo = await _check_mongo()
    ready = mongo["status"] == "healthy"
    checks = {"mongodb": "ready" if ready else f"not ready: {mongo['message']}"}

    open_breakers = _open_breakers(get_all_breakers_status())
    if open_breakers:
        ready = False
        checks["circuit_breakers"] = f"open: {', '.join(open_breakers)}"
    else:
        checks["circuit_breakers"] = "ready"

    if not ready:
        logger.warning(f"⚠️ Service not ready: {checks}")

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"ready": ready, "timestamp": _now(), "checks": checks},
    )


@router.get("/live", status_code=status.HTTP_200_OK)
async def liveness_check():
    """Process is up. Touches no external service."""
    return {
        "alive": True,
        "timestamp": _now(),
        "service": settings.PROJECT_NAME,
        "version": settings.VERSION,
    }


@router.get("/metrics", status_code=status.HTTP_200_OK)
async def metrics():
    """Breaker states plus connection details for MongoDB and Redis."""
    dependencies = {
        "mongodb": {"status": "connected" if is_mongo_ready() else "unavailable"},
    }

    if cache_service.is_enabled:
        try:
            info = await cache_service.get_client().info()
            dependencies["redis"] = {
                "status": "connected",
                "connected_clients": info.get("connected_clients", 0),
                "used_memory_human": info.get("used_memory_human", "unknown"),
                "uptime_in_seconds": info.get("uptime_in_seconds", 0),
            }
        except Exception as e:
            dependencies["redis"] = {"status": "unavailable", "error": str(e)}
    else:
        dependencies["redis"] = {"status": "disabled"}

    return {
        "timestamp": _now(),
        "service": settings.PROJECT_NAME,
        "circuit_breakers": get_all_breakers_status(),
        "dependencies": dependencies,
    }
