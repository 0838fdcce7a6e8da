import os
from typing import Any, Dict, List, Optional

import pytest
from httpx import AsyncClient, ASGITransport

# -------------------------------------------------------------------
# Settings are read at import time, so the environment must be set
# before anything from `app` is imported. Tests run without Redis and
# without MongoDB: the cache stays disabled and the query service is
# wired to the in-memory registry and a stub executor.
# -------------------------------------------------------------------
os.environ["ENVIRONMENT"] = "test"
os.environ["CACHE_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "ERROR"  # Reduce noise in tests

from app.api.deps import get_query_service  # noqa: E402
from app.core.circuit_breaker import reset_all_breakers  # noqa: E402
from app.main import app  # noqa: E402
from app.schemas.query import QueryCategory, QueryTemplate, TargetCollection  # noqa: E402
from app.services.cache_service import CacheService  # noqa: E402
from app.services.query_executor import QueryExecutor  # noqa: E402
from app.services.query_registry import InMemoryQueryRegistry  # noqa: E402
from app.services.query_service import QueryService  # noqa: E402


class StubQueryExecutor(QueryExecutor):
    """Returns canned rows and remembers every query it was asked to run."""

    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None):
        self.rows = rows if rows is not None else []
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None

    async def execute(
        self,
        collection: TargetCollection,
        query: Dict[str, Any],
        category: QueryCategory = QueryCategory.SEARCH,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        self.calls.append(
            {"collection": collection, "query": query, "category": category, "limit": limit}
        )
        if self.error is not None:
            raise self.error
        return self.rows if limit is None else self.rows[:limit]


@pytest.fixture(autouse=True)
def closed_breakers():
    """Breakers are process-wide; start every test with them closed."""
    reset_all_breakers()
    yield
    reset_all_breakers()


@pytest.fixture
def find_by_uni_payload():
    """Sample template: active users of a university."""
    return {
        "name": "findByUni",
        "description": "Active users of a university",
        "collection": "users",
        "query": {"university": "{{uni}}", "active": True},
        "parameters": [{"name": "uni", "type": "string", "required": True}],
        "category": "search",
        "tags": ["Users", "university"],
    }


@pytest.fixture
def users_by_age_payload():
    """Sample template with a bounded number and an enum parameter."""
    return {
        "name": "usersByAge",
        "collection": "users",
        "query": {"age": {"$gte": "{{age}}"}, "role": "{{role}}"},
        "parameters": [
            {
                "name": "age",
                "type": "number",
                "required": True,
                "validation": {"min": 13, "max": 120},
            },
            {
                "name": "role",
                "type": "string",
                "validation": {"enum": ["student", "lecturer"]},
            },
        ],
        "category": "filter",
        "tags": ["users"],
    }


@pytest.fixture
def find_by_uni_template(find_by_uni_payload):
    return QueryTemplate.model_validate(find_by_uni_payload)


@pytest.fixture
def registry():
    return InMemoryQueryRegistry()


@pytest.fixture
def executor():
    return StubQueryExecutor(
        rows=[
            {"_id": "652f1c2a9d3e4b0012345678", "name": "Nimal", "university": "Colombo"},
            {"_id": "652f1c2a9d3e4b0012345679", "name": "Kamala", "university": "Colombo"},
        ]
    )


@pytest.fixture
def query_service(registry, executor):
    return QueryService(registry=registry, executor=executor, cache=CacheService())


@pytest.fixture
async def client(query_service):
    """HTTP client against the app, with the query service overridden."""
    app.dependency_overrides[get_query_service] = lambda: query_service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
