import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from app.core.exceptions import (
    InvalidParametersError,
    QueryNotFoundError,
    ServiceUnavailableError,
)
from app.schemas.query import (
    ExecuteQueryRequest,
    ParameterCheckResult,
    QueryCreate,
    QueryExecutionResult,
    QueryStatistics,
    QueryTemplate,
    QueryUpdate,
)
from app.services import query_engine
from app.services.cache_service import CacheService
from app.services.query_executor import QueryExecutor, to_jsonable
from app.services.query_registry import QueryFilters, QueryRegistry

logger = logging.getLogger(__name__)

STATISTICS_CACHE_KEY = "statistics"


class QueryService:
    """
    Orchestrates stored query templates: CRUD, dry-run checks and execution.

    Execution flow: load the active template, validate the parameters,
    substitute them into the query document, run it, then record the
    elapsed time. Failed runs are never recorded.
    """

    def __init__(
        self,
        registry: QueryRegistry,
        executor: Optional[QueryExecutor],
        cache: CacheService,
    ):
        self.registry = registry
        self.executor = executor
        self.cache = cache

    # --- Lookup ---

    async def get_query(self, name: str, include_inactive: bool = False) -> QueryTemplate:
        """
        Load a template by name.

        Raises:
            QueryNotFoundError: If no (active) template has that name.
        """
        if not include_inactive:
            cached = await self.cache.get("queries", name)
            if cached:
                return QueryTemplate.model_validate(cached)

        template = await self.registry.find_by_name(name, active_only=not include_inactive)
        if template is None:
            raise QueryNotFoundError(name)

        if template.active:
            await self._cache_template(template)
        return template

    async def list_queries(
        self, filters: QueryFilters, page: int, limit: int
    ) -> Tuple[List[QueryTemplate], int]:
        skip = (page - 1) * limit
        return await self.registry.list_templates(filters, skip=skip, limit=limit)

    async def get_popular(self, limit: int) -> List[QueryTemplate]:
        return await self.registry.popular(limit)

    async def get_statistics(self) -> QueryStatistics:
        cached = await self.cache.get("performance", STATISTICS_CACHE_KEY)
        if cached:
            return QueryStatistics.model_validate(cached)

        statistics = await self.registry.statistics()
        await self.cache.set(
            "performance", STATISTICS_CACHE_KEY, statistics.model_dump(by_alias=True)
        )
        return statistics

    # --- CRUD ---

    async def create_query(self, payload: QueryCreate) -> QueryTemplate:
        template = QueryTemplate.model_validate(payload.model_dump(by_alias=True))

        undeclared = query_engine.undeclared_placeholders(template)
        if undeclared:
            logger.warning(
                f"⚠️ Query '{template.name}' references undeclared parameters",
                extra={"query_name": template.name, "placeholders": undeclared},
            )

        created = await self.registry.create(template)
        await self.cache.invalidate("performance", STATISTICS_CACHE_KEY)
        return created

    async def update_query(self, name: str, payload: QueryUpdate) -> QueryTemplate:
        changes = payload.model_dump(
            exclude_unset=True, exclude_none=True, by_alias=True, mode="json"
        )
        updated = await self.registry.update(name, changes)
        if updated is None:
            raise QueryNotFoundError(name)

        await self.cache.invalidate("queries", name)
        await self.cache.invalidate("queries", updated.name)
        await self.cache.invalidate("performance", STATISTICS_CACHE_KEY)
        logger.info(f"✏️ Query template updated: {name}")
        return updated

    async def delete_query(self, name: str) -> None:
        """Soft delete: the template is deactivated, not removed."""
        if not await self.registry.soft_delete(name):
            raise QueryNotFoundError(name)

        await self.cache.invalidate("queries", name)
        await self.cache.invalidate("performance", STATISTICS_CACHE_KEY)
        logger.info(f"🗑️ Query template deactivated: {name}")

    # --- Validation & execution ---

    async def check_parameters(
        self, name: str, parameters: Dict[str, Any]
    ) -> ParameterCheckResult:
        """Validate parameters and, when valid, preview the substituted query."""
        template = await self.get_query(name)
        errors = query_engine.validate_parameters(template, parameters)
        if errors:
            return ParameterCheckResult(valid=False, errors=errors)

        concrete = query_engine.substitute_parameters(template, parameters)
        return ParameterCheckResult(
            valid=True,
            query=to_jsonable(concrete),
            unresolved_placeholders=query_engine.find_placeholders(concrete),
        )

    async def execute_query(self, request: ExecuteQueryRequest) -> QueryExecutionResult:
        """
        Run a stored template with the caller's parameters.

        Raises:
            QueryNotFoundError: If no active template has that name.
            InvalidParametersError: With every validation error found.
            QueryExecutionError: If the database run fails or times out.
        """
        if self.executor is None:
            raise ServiceUnavailableError("Query executor is not initialized.")

        template = await self.get_query(request.query_name)

        errors = query_engine.validate_parameters(template, request.parameters)
        if errors:
            logger.warning(
                f"🚫 Invalid parameters for query '{template.name}'",
                extra={"query_name": template.name, "errors": errors},
            )
            raise InvalidParametersError(errors)

        concrete = query_engine.substitute_parameters(template, request.parameters)
        unresolved = query_engine.find_placeholders(concrete)
        if unresolved:
            logger.warning(
                f"⚠️ Query '{template.name}' has unresolved placeholders: {unresolved}",
                extra={"query_name": template.name, "placeholders": unresolved},
            )

        started = time.perf_counter()
        results = await self.executor.execute(
            template.collection, concrete, template.category, request.limit
        )
        elapsed_ms = (time.perf_counter() - started) * 1000

        await self._record_execution(template, elapsed_ms)

        logger.info(
            f"✅ Query '{template.name}' returned {len(results)} rows in {elapsed_ms:.2f}ms",
            extra={
                "query_name": template.name,
                "collection": template.collection.value,
                "rows": len(results),
            },
        )
        return QueryExecutionResult(
            query_name=template.name,
            collection=template.collection,
            count=len(results),
            execution_time_ms=round(elapsed_ms, 2),
            results=results,
        )

    # --- Helpers ---

    async def _record_execution(self, template: QueryTemplate, elapsed_ms: float):
        # A failed statistics write does not fail the request.
        try:
            updated = await self.registry.record_execution(template.name, elapsed_ms)
        except Exception as e:
            logger.error(f"❌ Failed to record execution of '{template.name}': {e}")
            return

        if updated is not None and updated.active:
            await self._cache_template(updated)

    async def _cache_template(self, template: QueryTemplate):
        await self.cache.set(
            "queries", template.name, template.model_dump(by_alias=True, mode="json")
        )
