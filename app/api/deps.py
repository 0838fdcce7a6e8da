from app.core.events import get_query_executor, get_query_registry
from app.core.exceptions import ServiceUnavailableError
from app.services.cache_service import cache_service
from app.services.query_service import QueryService


def get_query_service() -> QueryService:
    """FastAPI dependency building the query service from the live connections."""
    registry = get_query_registry()
    if registry is None:
        raise ServiceUnavailableError("Query registry is not available.")
    return QueryService(
        registry=registry, executor=get_query_executor(), cache=cache_service
    )
