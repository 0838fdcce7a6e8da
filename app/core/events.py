import logging
import asyncio
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from app.core.config import settings
from app.services.cache_service import cache_service
from app.services.query_executor import MongoQueryExecutor, QueryExecutor
from app.services.query_registry import MongoQueryRegistry, QueryRegistry

logger = logging.getLogger(__name__)

# Global MongoDB state
_MONGO_CLIENT: Optional[AsyncIOMotorClient] = None
_DATABASE: Optional[AsyncIOMotorDatabase] = None
_QUERY_REGISTRY: Optional[QueryRegistry] = None
_QUERY_EXECUTOR: Optional[QueryExecutor] = None


async def _connect_cache():
    """Cache is optional: failures are logged and the service runs uncached."""
    try:
        cache_service.initialize_client()
        if cache_service.is_enabled:
            await cache_service.get_client().ping()
            logger.info("✅ Redis connected")
    except Exception as e:
        logger.error(f"❌ Redis connection failed, running without cache: {e}")
        await cache_service.close()


async def startup_handler():
    """Initialize external connections on startup."""
    global _MONGO_CLIENT, _DATABASE, _QUERY_REGISTRY, _QUERY_EXECUTOR

    logger.info(f"🚀 Starting {settings.PROJECT_NAME} ({settings.ENVIRONMENT})...")

    await _connect_cache()

    # Initialize MongoDB with retry logic
    max_retries = 5
    retry_delay = 5

    for attempt in range(1, max_retries + 1):
        try:
            logger.info(f"🔄 Connecting to MongoDB (attempt {attempt}/{max_retries})...")

            _MONGO_CLIENT = AsyncIOMotorClient(
                settings.MONGO_URL, tz_aware=True, serverSelectionTimeoutMS=5000
            )
            await _MONGO_CLIENT.admin.command("ping")
            _DATABASE = _MONGO_CLIENT[settings.MONGO_DB_NAME]
            logger.info(f"✅ MongoDB connection established: {settings.MONGO_DB_NAME}")

            registry = MongoQueryRegistry(_DATABASE)
            await registry.ensure_indexes()
            _QUERY_REGISTRY = registry
            _QUERY_EXECUTOR = MongoQueryExecutor(_DATABASE)

            logger.info("✅ Query registry and executor ready!")
            break  # Success - exit retry loop

        except Exception as e:
            logger.error(f"❌ MongoDB connection attempt {attempt} failed: {e}")

            if _MONGO_CLIENT is not None:
                _MONGO_CLIENT.close()
                _MONGO_CLIENT = None

            if attempt < max_retries:
                logger.info(f"⏳ Retrying in {retry_delay} seconds...")
                await asyncio.sleep(retry_delay)
            else:
                logger.error("❌ Failed to connect to MongoDB after all retry attempts!")
                raise RuntimeError(f"MongoDB initialization failed: {e}")


async def shutdown_handler():
    """Close external connections on shutdown."""
    global _MONGO_CLIENT, _DATABASE, _QUERY_REGISTRY, _QUERY_EXECUTOR

    logger.info("🔄 Shutting down...")

    if _MONGO_CLIENT is not None:
        _MONGO_CLIENT.close()
        logger.info("✅ MongoDB connection closed")

    _MONGO_CLIENT = None
    _DATABASE = None
    _QUERY_REGISTRY = None
    _QUERY_EXECUTOR = None

    try:
        await cache_service.close()
    except Exception as e:
        logger.error(f"⚠️ Redis close error: {e}")


def get_database() -> Optional[AsyncIOMotorDatabase]:
    return _DATABASE


def get_query_registry() -> Optional[QueryRegistry]:
    """Get the query registry instance."""
    if _QUERY_REGISTRY is None:
        logger.error("❌ Query registry requested but not initialized!")
    return _QUERY_REGISTRY


def get_query_executor() -> Optional[QueryExecutor]:
    return _QUERY_EXECUTOR


def is_mongo_ready() -> bool:
    """Check if the MongoDB connection is ready."""
    return _MONGO_CLIENT is not None and _QUERY_REGISTRY is not None
