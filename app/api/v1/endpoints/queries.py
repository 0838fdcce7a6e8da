import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_query_service
from app.core.config import settings
from app.schemas.query import (
    ExecuteQueryRequest,
    ParameterCheckRequest,
    ParameterCheckResult,
    QueryCategory,
    QueryCreate,
    QueryExecutionResult,
    QueryStatistics,
    QuerySummary,
    QueryTemplate,
    QueryUpdate,
    TargetCollection,
)
from app.schemas.response import APIResponse, PaginationMeta
from app.services.query_registry import QueryFilters
from app.services.query_service import QueryService

router = APIRouter(prefix="/queries")
logger = logging.getLogger(__name__)


@router.post(
    "",
    response_model=APIResponse[QueryTemplate],
    status_code=status.HTTP_201_CREATED,
)
async def create_query(
    payload: QueryCreate, service: QueryService = Depends(get_query_service)
):
    """
    Register a new query template.

    **Returns:**
    - 201: Template created
    - 409: A template with the same name already exists
    - 422: Invalid template definition
    """
    template = await service.create_query(payload)
    return APIResponse(
        success=True, message="Query created successfully", data=template
    )


@router.get("", response_model=APIResponse[List[QuerySummary]])
async def list_queries(
    collection: Optional[TargetCollection] = None,
    category: Optional[QueryCategory] = None,
    tag: Optional[str] = None,
    search: Optional[str] = Query(None, min_length=1),
    include_inactive: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(
        settings.PAGINATION_DEFAULT_LIMIT, ge=1, le=settings.PAGINATION_MAX_LIMIT
    ),
    service: QueryService = Depends(get_query_service),
):
    """
    List query templates, newest first.

    **Query Parameters:**
    - `collection`, `category`, `tag`: exact filters
    - `search`: case-insensitive match on name, description or tags
    - `include_inactive`: also list soft-deleted templates
    - `page`, `limit`: pagination
    """
    filters = QueryFilters(
        collection=collection,
        category=category,
        tag=tag,
        search=search,
        include_inactive=include_inactive,
    )
    templates, total = await service.list_queries(filters, page, limit)
    return APIResponse(
        success=True,
        message="Queries retrieved successfully",
        data=[t.summary() for t in templates],
        meta=PaginationMeta.build(total=total, page=page, limit=limit),
    )


@router.get("/statistics", response_model=APIResponse[QueryStatistics])
async def get_query_statistics(service: QueryService = Depends(get_query_service)):
    """Aggregate counts and timings across all templates."""
    statistics = await service.get_statistics()
    return APIResponse(
        success=True, message="Statistics retrieved successfully", data=statistics
    )


@router.get("/popular", response_model=APIResponse[List[QuerySummary]])
async def get_popular_queries(
    limit: int = Query(
        settings.POPULAR_QUERIES_DEFAULT_LIMIT, ge=1, le=settings.PAGINATION_MAX_LIMIT
    ),
    service: QueryService = Depends(get_query_service),
):
    """Active templates with the most executions."""
    templates = await service.get_popular(limit)
    return APIResponse(
        success=True,
        message="Popular queries retrieved successfully",
        data=[t.summary() for t in templates],
    )


@router.post("/execute", response_model=APIResponse[QueryExecutionResult])
async def execute_query(
    payload: ExecuteQueryRequest, service: QueryService = Depends(get_query_service)
):
    """
    Execute a stored query template.

    **Request Body:**
    ```json
    {
      "queryName": "findByUni",
      "parameters": {"uni": "Colombo"}
    }
    ```

    **Returns:**
    - 200: Result rows and timing
    - 400: Parameter validation failed (`errors` lists every problem)
    - 404: No active template with that name
    - 500/504: Query failed or timed out
    """
    result = await service.execute_query(payload)
    return APIResponse(
        success=True, message="Query executed successfully", data=result
    )


@router.get("/{name}", response_model=APIResponse[QueryTemplate])
async def get_query(
    name: str,
    include_inactive: bool = False,
    service: QueryService = Depends(get_query_service),
):
    """Get a template by name. Inactive templates need `include_inactive=true`."""
    template = await service.get_query(name, include_inactive=include_inactive)
    return APIResponse(
        success=True, message="Query retrieved successfully", data=template
    )


@router.put("/{name}", response_model=APIResponse[QueryTemplate])
async def update_query(
    name: str,
    payload: QueryUpdate,
    service: QueryService = Depends(get_query_service),
):
    """Partially update a template. Only the fields sent are changed."""
    template = await service.update_query(name, payload)
    return APIResponse(
        success=True, message="Query updated successfully", data=template
    )


@router.delete("/{name}", response_model=APIResponse[None])
async def delete_query(name: str, service: QueryService = Depends(get_query_service)):
    """Soft delete: the template is marked inactive and kept in storage."""
    await service.delete_query(name)
    return APIResponse(success=True, message="Query deleted successfully", data=None)


@router.post("/{name}/validate", response_model=APIResponse[ParameterCheckResult])
async def validate_query_parameters(
    name: str,
    payload: ParameterCheckRequest,
    service: QueryService = Depends(get_query_service),
):
    """
    Dry run: validate parameters against the template without executing it.

    When the parameters are valid the substituted query is returned, along
    with any placeholders that were left unresolved.
    """
    result = await service.check_parameters(name, payload.parameters)
    return APIResponse(
        success=True,
        message="Parameters are valid" if result.valid else "Parameters are invalid",
        data=result,
    )
