"""
Persistence for query templates.

`QueryRegistry` is the contract the query service relies on. Two
implementations are provided: `MongoQueryRegistry` (motor) for deployments
and `InMemoryQueryRegistry` for tests and local experiments.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.core.circuit_breaker import async_circuit_breaker, mongo_breaker
from app.core.config import settings
from app.core.exceptions import QueryAlreadyExistsError
from app.schemas.query import QueryCategory, QueryStatistics, QueryTemplate, TargetCollection
from app.services import query_engine

logger = logging.getLogger(__name__)


@dataclass
class QueryFilters:
    """Listing filters. Inactive templates are excluded unless asked for."""

    collection: Optional[TargetCollection] = None
    category: Optional[QueryCategory] = None
    tag: Optional[str] = None
    search: Optional[str] = None
    include_inactive: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _round(value: float) -> float:
    return round(value, 2)


class QueryRegistry(ABC):
    """Stores and retrieves query templates by their unique name."""

    @abstractmethod
    async def find_by_name(
        self, name: str, active_only: bool = True
    ) -> Optional[QueryTemplate]:
        ...

    @abstractmethod
    async def create(self, template: QueryTemplate) -> QueryTemplate:
        """Insert a new template. Raises QueryAlreadyExistsError on a duplicate name."""

    @abstractmethod
    async def save(self, template: QueryTemplate) -> QueryTemplate:
        """Overwrite the stored template with the same name."""

    @abstractmethod
    async def update(self, name: str, changes: Dict[str, Any]) -> Optional[QueryTemplate]:
        """
        Apply a partial update given in persisted (camelCase) field names.

        Returns None when no template has that name. Renaming onto an
        existing name raises QueryAlreadyExistsError.
        """

    @abstractmethod
    async def soft_delete(self, name: str) -> bool:
        ...

    @abstractmethod
    async def record_execution(
        self, name: str, elapsed_ms: float
    ) -> Optional[QueryTemplate]:
        """Fold one successful execution into the template's statistics."""

    @abstractmethod
    async def list_templates(
        self, filters: QueryFilters, skip: int = 0, limit: int = 10
    ) -> Tuple[List[QueryTemplate], int]:
        """Return one page of templates, newest first, and the total match count."""

    @abstractmethod
    async def statistics(self) -> QueryStatistics:
        ...

    @abstractmethod
    async def popular(self, limit: int = 10) -> List[QueryTemplate]:
        """Active templates ordered by execution count, highest first."""

    async def ping(self) -> bool:
        return True


# --- MongoDB ---


def to_document(template: QueryTemplate) -> Dict[str, Any]:
    """Serialize a template into its stored shape, keeping datetimes native."""
    document = template.model_dump(by_alias=True, mode="json", exclude={"id"})
    document.update(
        template.model_dump(
            by_alias=True, include={"last_executed", "created_at", "updated_at"}
        )
    )
    return document


def from_document(document: Dict[str, Any]) -> QueryTemplate:
    document = dict(document)
    if "_id" in document:
        document["id"] = str(document.pop("_id"))
    return QueryTemplate.model_validate(document)


class MongoQueryRegistry(QueryRegistry):
    """Query templates stored as documents in a MongoDB collection."""

    def __init__(self, database: AsyncIOMotorDatabase):
        self.collection: AsyncIOMotorCollection = database[
            settings.MONGO_QUERIES_COLLECTION
        ]

    async def ensure_indexes(self):
        await self.collection.create_index([("name", ASCENDING)], unique=True)
        for field in ("collection", "active", "category", "tags", "createdAt"):
            await self.collection.create_index([(field, ASCENDING)])
        logger.info(f"✅ Indexes ensured on '{self.collection.name}'")

    @staticmethod
    def _build_filter(filters: QueryFilters) -> Dict[str, Any]:
        mongo_filter: Dict[str, Any] = {}
        if not filters.include_inactive:
            mongo_filter["active"] = True
        if filters.collection:
            mongo_filter["collection"] = filters.collection.value
        if filters.category:
            mongo_filter["category"] = filters.category.value
        if filters.tag:
            mongo_filter["tags"] = filters.tag.strip().lower()
        if filters.search:
            pattern = {"$regex": re.escape(filters.search), "$options": "i"}
            mongo_filter["$or"] = [
                {"name": pattern},
                {"description": pattern},
                {"tags": pattern},
            ]
        return mongo_filter

    @async_circuit_breaker(mongo_breaker)
    async def find_by_name(
        self, name: str, active_only: bool = True
    ) -> Optional[QueryTemplate]:
        mongo_filter: Dict[str, Any] = {"name": name}
        if active_only:
            mongo_filter["active"] = True
        document = await self.collection.find_one(mongo_filter)
        return from_document(document) if document else None

    @async_circuit_breaker(mongo_breaker, exclude=(QueryAlreadyExistsError,))
    async def create(self, template: QueryTemplate) -> QueryTemplate:
        now = _utcnow()
        template = template.model_copy(update={"created_at": now, "updated_at": now})
        document = to_document(template)
        try:
            result = await self.collection.insert_one(document)
        except DuplicateKeyError:
            raise QueryAlreadyExistsError(template.name)
        logger.info(f"🆕 Query template created: {template.name}")
        return template.model_copy(update={"id": str(result.inserted_id)})

    @async_circuit_breaker(mongo_breaker)
    async def save(self, template: QueryTemplate) -> QueryTemplate:
        template = template.model_copy(update={"updated_at": _utcnow()})
        await self.collection.replace_one({"name": template.name}, to_document(template))
        return template

    @async_circuit_breaker(mongo_breaker, exclude=(QueryAlreadyExistsError,))
    async def update(self, name: str, changes: Dict[str, Any]) -> Optional[QueryTemplate]:
        changes = {**changes, "updatedAt": _utcnow()}
        try:
            document = await self.collection.find_one_and_update(
                {"name": name},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise QueryAlreadyExistsError(changes.get("name"))
        return from_document(document) if document else None

    @async_circuit_breaker(mongo_breaker)
    async def soft_delete(self, name: str) -> bool:
        result = await self.collection.update_one(
            {"name": name, "active": True},
            {"$set": {"active": False, "updatedAt": _utcnow()}},
        )
        return result.modified_count > 0

    @async_circuit_breaker(mongo_breaker)
    async def record_execution(
        self, name: str, elapsed_ms: float
    ) -> Optional[QueryTemplate]:
        """
        Update the statistics in a single update-pipeline so concurrent
        executions of the same template never lose a count.
        """
        elapsed_ms = max(float(elapsed_ms), 0.0)
        now = _utcnow()
        previous_average = {"$ifNull": ["$averageExecutionTime", 0]}
        document = await self.collection.find_one_and_update(
            {"name": name},
            [
                {
                    "$set": {
                        "executionCount": {
                            "$add": [{"$ifNull": ["$executionCount", 0]}, 1]
                        },
                        "lastExecuted": {
                            "$max": [{"$ifNull": ["$lastExecuted", now]}, now]
                        },
                        "averageExecutionTime": {
                            "$cond": [
                                {"$eq": [previous_average, 0]},
                                elapsed_ms,
                                {"$divide": [{"$add": [previous_average, elapsed_ms]}, 2]},
                            ]
                        },
                    }
                }
            ],
            return_document=ReturnDocument.AFTER,
        )
        return from_document(document) if document else None

    @async_circuit_breaker(mongo_breaker)
    async def list_templates(
        self, filters: QueryFilters, skip: int = 0, limit: int = 10
    ) -> Tuple[List[QueryTemplate], int]:
        mongo_filter = self._build_filter(filters)
        total = await self.collection.count_documents(mongo_filter)
        cursor = (
            self.collection.find(mongo_filter)
            .sort("createdAt", DESCENDING)
            .skip(skip)
            .limit(limit)
        )
        documents = await cursor.to_list(length=limit)
        return [from_document(d) for d in documents], total

    @async_circuit_breaker(mongo_breaker)
    async def statistics(self) -> QueryStatistics:
        pipeline = [
            {
                "$group": {
                    "_id": None,
                    "totalQueries": {"$sum": 1},
                    "activeQueries": {
                        "$sum": {"$cond": [{"$eq": ["$active", True]}, 1, 0]}
                    },
                    "inactiveQueries": {
                        "$sum": {"$cond": [{"$eq": ["$active", False]}, 1, 0]}
                    },
                    "totalExecutions": {"$sum": "$executionCount"},
                    "averageExecutionTime": {"$avg": "$averageExecutionTime"},
                    "collections": {"$addToSet": "$collection"},
                    "categories": {"$addToSet": "$category"},
                }
            },
            {
                "$project": {
                    "_id": 0,
                    "totalQueries": 1,
                    "activeQueries": 1,
                    "inactiveQueries": 1,
                    "totalExecutions": 1,
                    "averageExecutionTime": {"$round": ["$averageExecutionTime", 2]},
                    "collectionsCount": {"$size": "$collections"},
                    "categoriesCount": {"$size": "$categories"},
                }
            },
        ]
        results = await self.collection.aggregate(pipeline).to_list(length=1)
        if not results:
            return QueryStatistics()
        return QueryStatistics.model_validate(results[0])

    @async_circuit_breaker(mongo_breaker)
    async def popular(self, limit: int = 10) -> List[QueryTemplate]:
        cursor = (
            self.collection.find({"active": True})
            .sort("executionCount", DESCENDING)
            .limit(limit)
        )
        documents = await cursor.to_list(length=limit)
        return [from_document(d) for d in documents]

    async def ping(self) -> bool:
        await self.collection.database.command("ping")
        return True


# --- In-memory ---


class InMemoryQueryRegistry(QueryRegistry):
    """Process-local registry. Writes are serialized with an asyncio.Lock."""

    def __init__(self, templates: Optional[List[QueryTemplate]] = None):
        self._templates: Dict[str, QueryTemplate] = {}
        self._lock = asyncio.Lock()
        for template in templates or []:
            self._templates[template.name] = template.model_copy(
                update={"id": template.id or str(ObjectId())}
            )

    @staticmethod
    def _matches(template: QueryTemplate, filters: QueryFilters) -> bool:
        if not filters.include_inactive and not template.active:
            return False
        if filters.collection and template.collection != filters.collection:
            return False
        if filters.category and template.category != filters.category:
            return False
        if filters.tag and filters.tag.strip().lower() not in template.tags:
            return False
        if filters.search:
            term = filters.search.lower()
            haystack = [template.name, template.description or "", *template.tags]
            if not any(term in text.lower() for text in haystack):
                return False
        return True

    async def find_by_name(
        self, name: str, active_only: bool = True
    ) -> Optional[QueryTemplate]:
        template = self._templates.get(name)
        if template is None or (active_only and not template.active):
            return None
        return template

    async def create(self, template: QueryTemplate) -> QueryTemplate:
        async with self._lock:
            if template.name in self._templates:
                raise QueryAlreadyExistsError(template.name)
            now = _utcnow()
            template = template.model_copy(
                update={"id": str(ObjectId()), "created_at": now, "updated_at": now}
            )
            self._templates[template.name] = template
        logger.info(f"🆕 Query template created: {template.name}")
        return template

    async def save(self, template: QueryTemplate) -> QueryTemplate:
        async with self._lock:
            template = template.model_copy(update={"updated_at": _utcnow()})
            self._templates[template.name] = template
        return template

    async def update(self, name: str, changes: Dict[str, Any]) -> Optional[QueryTemplate]:
        async with self._lock:
            current = self._templates.get(name)
            if current is None:
                return None
            new_name = changes.get("name", name)
            if new_name != name and new_name in self._templates:
                raise QueryAlreadyExistsError(new_name)

            merged = current.model_dump(by_alias=True)
            merged.update(changes)
            merged["updatedAt"] = _utcnow()
            updated = QueryTemplate.model_validate(merged)

            del self._templates[name]
            self._templates[updated.name] = updated
        return updated

    async def soft_delete(self, name: str) -> bool:
        async with self._lock:
            template = self._templates.get(name)
            if template is None or not template.active:
                return False
            self._templates[name] = template.model_copy(
                update={"active": False, "updated_at": _utcnow()}
            )
        return True

    async def record_execution(
        self, name: str, elapsed_ms: float
    ) -> Optional[QueryTemplate]:
        async with self._lock:
            template = self._templates.get(name)
            if template is None:
                return None
            updated = query_engine.record_execution(template, elapsed_ms)
            self._templates[name] = updated
        return updated

    async def list_templates(
        self, filters: QueryFilters, skip: int = 0, limit: int = 10
    ) -> Tuple[List[QueryTemplate], int]:
        matches = [t for t in self._templates.values() if self._matches(t, filters)]
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        matches.sort(key=lambda t: t.created_at or oldest, reverse=True)
        return matches[skip : skip + limit], len(matches)

    async def statistics(self) -> QueryStatistics:
        templates = list(self._templates.values())
        if not templates:
            return QueryStatistics()
        active = sum(1 for t in templates if t.active)
        return QueryStatistics(
            total_queries=len(templates),
            active_queries=active,
            inactive_queries=len(templates) - active,
            total_executions=sum(t.execution_count for t in templates),
            average_execution_time=_round(
                sum(t.average_execution_time for t in templates) / len(templates)
            ),
            collections_count=len({t.collection for t in templates}),
            categories_count=len({t.category for t in templates}),
        )

    async def popular(self, limit: int = 10) -> List[QueryTemplate]:
        active = [t for t in self._templates.values() if t.active]
        active.sort(key=lambda t: t.execution_count, reverse=True)
        return active[:limit]
