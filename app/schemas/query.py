from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ParameterType(str, Enum):
    """Types a template parameter can declare."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    OBJECT_ID = "objectId"


class TargetCollection(str, Enum):
    """Collections a query template is allowed to run against."""

    USERS = "users"
    UNIVERSITIES = "universities"
    FACULTIES = "faculties"
    CARTS = "carts"


class QueryCategory(str, Enum):
    SEARCH = "search"
    FILTER = "filter"
    AGGREGATE = "aggregate"
    REPORT = "report"


class ParameterValidation(BaseModel):
    """
    Optional constraints attached to a parameter.

    `min`/`max` only apply to number parameters. `pattern` is kept as
    metadata and is not enforced by the validator.
    """

    min: Optional[Union[int, float]] = None
    max: Optional[Union[int, float]] = None
    pattern: Optional[str] = None
    enum: Optional[List[Any]] = None


class ParameterSchema(BaseModel):
    """One named, typed parameter declared by a query template."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, description="Parameter name")
    type: ParameterType = Field(ParameterType.STRING, description="Declared type")
    required: bool = False
    description: Optional[str] = Field(None, max_length=200)
    default_value: Optional[Any] = Field(None, alias="defaultValue")
    validation: Optional[ParameterValidation] = None

    @field_validator("name", "description")
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        return value.strip() if isinstance(value, str) else value


def _normalize_tags(tags: Optional[List[str]]) -> Optional[List[str]]:
    if tags is None:
        return None
    normalized = []
    for tag in tags:
        tag = tag.strip().lower()
        if tag and tag not in normalized:
            normalized.append(tag)
    return normalized


def _lowercase(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


# Names shadowed by fixed routes under /queries
RESERVED_QUERY_NAMES = {"statistics", "popular"}


def _check_not_reserved(name: Optional[str]) -> Optional[str]:
    if name in RESERVED_QUERY_NAMES:
        raise ValueError(f"'{name}' is a reserved query name")
    return name


class QueryTemplateBase(BaseModel):
    """Fields shared by stored templates and create payloads."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    collection: TargetCollection
    query: Dict[str, Any] = Field(
        ..., description="Query document containing {{param}} placeholders"
    )
    parameters: List[ParameterSchema] = Field(default_factory=list)
    category: QueryCategory = QueryCategory.SEARCH
    tags: List[str] = Field(default_factory=list)
    created_by: Optional[str] = Field(None, alias="createdBy")

    @field_validator("name", "description", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("collection", "category", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        return _lowercase(value)

    @field_validator("tags")
    @classmethod
    def _tags(cls, value: List[str]) -> List[str]:
        return _normalize_tags(value)


class QueryTemplate(QueryTemplateBase):
    """A stored, parameterized query together with its execution statistics."""

    id: Optional[str] = None
    active: bool = True
    execution_count: int = Field(0, ge=0, alias="executionCount")
    last_executed: Optional[datetime] = Field(None, alias="lastExecuted")
    average_execution_time: float = Field(0.0, ge=0, alias="averageExecutionTime")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")

    def get_parameter(self, name: str) -> Optional[ParameterSchema]:
        """Return the first parameter declared under `name`, if any."""
        for parameter in self.parameters:
            if parameter.name == name:
                return parameter
        return None

    def summary(self) -> "QuerySummary":
        return QuerySummary(
            id=self.id,
            name=self.name,
            description=self.description,
            collection=self.collection,
            category=self.category,
            parameter_count=len(self.parameters),
            execution_count=self.execution_count,
            active=self.active,
            last_executed=self.last_executed,
        )


class QueryCreate(QueryTemplateBase):
    """Payload for registering a new query template."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "name": "findByUni",
                "description": "Active users of a university",
                "collection": "users",
                "query": {"university": "{{uni}}", "active": True},
                "parameters": [
                    {"name": "uni", "type": "string", "required": True},
                ],
                "category": "search",
                "tags": ["users", "university"],
            }
        },
    )

    @field_validator("name")
    @classmethod
    def _not_reserved(cls, value: str) -> str:
        return _check_not_reserved(value)


class QueryUpdate(BaseModel):
    """Partial update of a template. Only fields that are set get applied."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    collection: Optional[TargetCollection] = None
    query: Optional[Dict[str, Any]] = None
    parameters: Optional[List[ParameterSchema]] = None
    category: Optional[QueryCategory] = None
    tags: Optional[List[str]] = None
    active: Optional[bool] = None

    @field_validator("name", "description", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("collection", "category", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        return _lowercase(value)

    @field_validator("tags")
    @classmethod
    def _tags(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _normalize_tags(value)

    @field_validator("name")
    @classmethod
    def _not_reserved(cls, value: Optional[str]) -> Optional[str]:
        return _check_not_reserved(value)


class QuerySummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    collection: TargetCollection
    category: QueryCategory
    parameter_count: int = Field(0, alias="parameterCount")
    execution_count: int = Field(0, alias="executionCount")
    active: bool = True
    last_executed: Optional[datetime] = Field(None, alias="lastExecuted")


class ExecuteQueryRequest(BaseModel):
    """Request body for running a stored query template."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "queryName": "findByUni",
                "parameters": {"uni": "Colombo"},
            }
        },
    )

    query_name: str = Field(..., min_length=1, alias="queryName")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    limit: Optional[int] = Field(None, ge=1, description="Maximum rows to return")


class QueryExecutionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query_name: str = Field(..., alias="queryName")
    collection: TargetCollection
    count: int
    execution_time_ms: float = Field(..., alias="executionTimeMs")
    results: List[Dict[str, Any]]


class ParameterCheckRequest(BaseModel):
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ParameterCheckResult(BaseModel):
    """Outcome of a dry-run validation, with the substituted query when valid."""

    model_config = ConfigDict(populate_by_name=True)

    valid: bool
    errors: List[str] = Field(default_factory=list)
    query: Optional[Dict[str, Any]] = None
    unresolved_placeholders: List[str] = Field(
        default_factory=list, alias="unresolvedPlaceholders"
    )


class QueryStatistics(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_queries: int = Field(0, alias="totalQueries")
    active_queries: int = Field(0, alias="activeQueries")
    inactive_queries: int = Field(0, alias="inactiveQueries")
    total_executions: int = Field(0, alias="totalExecutions")
    average_execution_time: float = Field(0.0, alias="averageExecutionTime")
    collections_count: int = Field(0, alias="collectionsCount")
    categories_count: int = Field(0, alias="categoriesCount")
