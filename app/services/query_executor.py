import asyncio
import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import Decimal128, ObjectId
from bson.errors import InvalidDocument
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from app.core.circuit_breaker import async_circuit_breaker, mongo_breaker
from app.core.config import settings
from app.core.exceptions import QueryExecutionError, QueryTimeoutError
from app.schemas.query import QueryCategory, TargetCollection

logger = logging.getLogger(__name__)

# Fields never returned from a collection, whatever the template asks for
HIDDEN_FIELDS: Dict[TargetCollection, List[str]] = {
    TargetCollection.USERS: ["password"],
}

AGGREGATION_CATEGORIES = {QueryCategory.AGGREGATE, QueryCategory.REPORT}

# Raised while encoding the query itself; the database was never reached
ENCODING_ERRORS = (InvalidDocument, OverflowError)


def to_jsonable(value: Any) -> Any:
    """Convert BSON-specific values in a document into JSON-friendly ones."""
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return str(value.to_decimal())
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, float) and not math.isfinite(value):
        return str(value).replace("inf", "Infinity").replace("nan", "NaN")
    return value


class QueryExecutor(ABC):
    """Runs a concrete query document against one of the allowed collections."""

    @abstractmethod
    async def execute(
        self,
        collection: TargetCollection,
        query: Dict[str, Any],
        category: QueryCategory = QueryCategory.SEARCH,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Raises:
            QueryTimeoutError: If the query does not finish in time.
            QueryExecutionError: If the database rejects or fails the query.
        """


class MongoQueryExecutor(QueryExecutor):
    """
    Executes substituted templates with motor.

    For aggregate and report templates whose document holds a `pipeline`
    list, the pipeline is run as an aggregation; every other document is
    used as a `find` filter.
    """

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        timeout_seconds: float = settings.QUERY_EXECUTION_TIMEOUT_SECONDS,
        max_results: int = settings.QUERY_RESULT_LIMIT,
    ):
        self.database = database
        self.timeout_seconds = timeout_seconds
        self.max_results = max_results

    def _limit(self, limit: Optional[int]) -> int:
        return min(limit or self.max_results, self.max_results)

    @async_circuit_breaker(mongo_breaker, exclude=ENCODING_ERRORS)
    async def _run(
        self,
        collection: TargetCollection,
        query: Dict[str, Any],
        category: QueryCategory,
        limit: int,
    ) -> List[Dict[str, Any]]:
        target = self.database[collection.value]
        hidden = HIDDEN_FIELDS.get(collection, [])
        pipeline = query.get("pipeline")

        if category in AGGREGATION_CATEGORIES and isinstance(pipeline, list):
            stages = list(pipeline)
            if hidden:
                stages.insert(0, {"$unset": hidden})
            stages.append({"$limit": limit})
            cursor = target.aggregate(stages)
        else:
            projection = {field: 0 for field in hidden} or None
            cursor = target.find(query, projection).limit(limit)

        return await cursor.to_list(length=limit)

    async def execute(
        self,
        collection: TargetCollection,
        query: Dict[str, Any],
        category: QueryCategory = QueryCategory.SEARCH,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        try:
            documents = await asyncio.wait_for(
                self._run(collection, query, category, self._limit(limit)),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"⏱️ Query on '{collection.value}' timed out after {self.timeout_seconds}s"
            )
            raise QueryTimeoutError()
        except ENCODING_ERRORS as e:
            logger.warning(f"🚫 Query on '{collection.value}' cannot be encoded: {e}")
            raise QueryExecutionError(f"Query cannot be encoded: {e}")
        except PyMongoError as e:
            logger.error(f"❌ Query on '{collection.value}' failed: {e}")
            raise QueryExecutionError(f"Query execution failed: {e}")

        return [to_jsonable(document) for document in documents]
