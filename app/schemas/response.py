import math
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict

DataT = TypeVar("DataT")


class PaginationMeta(BaseModel):
    """Page information attached to listing responses."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "total": 42,
                "limit": 10,
                "page": 2,
                "total_pages": 5,
                "has_next": True,
                "has_previous": True,
            }
        }
    )

    total: int
    limit: int = 1
    page: int = 1
    total_pages: int = 1
    has_next: bool = False
    has_previous: bool = False

    @classmethod
    def build(cls, total: int, page: int, limit: int) -> "PaginationMeta":
        total_pages = max(math.ceil(total / limit), 1) if limit else 1
        return cls(
            total=total,
            limit=limit,
            page=page,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
        )


class APIResponse(BaseModel, Generic[DataT]):
    """
    Envelope for every successful response.
    Errors use the same `success`/`message` keys, see app/core/exceptions.py.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": True,
                "message": "Query retrieved successfully",
                "data": {"name": "findByUni", "collection": "users"},
                "meta": None,
            }
        }
    )

    success: bool = True
    message: str
    data: DataT
    meta: Optional[PaginationMeta] = None
