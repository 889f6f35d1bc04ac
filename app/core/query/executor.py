import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from bson import json_util
from bson.errors import BSONError
from pymongo.asynchronous.collection import AsyncCollection
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import PyMongoError

from app.core.config import settings
from app.core.exceptions import ExecutionError
from app.core.query.parser import OperationKind, ParsedOperation


# -----------------------------------------------------------------------------
# EXECUTOR
# Purpose: run one ParsedOperation against a resolved database handle.
# Always resolves to an ExecutionOutcome holding a result or an error,
# never both; store failures are captured, not raised.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionOutcome:
    result: Any = None
    error: Optional[ExecutionError] = None
    truncated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, result: Any, truncated: bool = False) -> "ExecutionOutcome":
        return cls(result=result, truncated=truncated)

    @classmethod
    def failure(cls, message: str) -> "ExecutionOutcome":
        return cls(error=ExecutionError(message))


@dataclass(frozen=True)
class Limits:
    max_documents: int
    max_time_ms: int


# Everything the driver or BSON encoding raises for a bad operation;
# 8-byte integer overflow surfaces as OverflowError, not ValueError
EXECUTION_ERRORS = (PyMongoError, BSONError, TypeError, ValueError, OverflowError)

Handler = Callable[[AsyncCollection, Tuple[Any, ...], Limits], Awaitable[Tuple[Any, bool]]]

# Shell option name -> driver keyword
UPDATE_OPTIONS = {
    "upsert": "upsert",
    "arrayFilters": "array_filters",
    "hint": "hint",
    "collation": "collation",
    "let": "let",
}
DELETE_OPTIONS = {"hint": "hint", "collation": "collation", "let": "let"}


def _argument(arguments: Tuple[Any, ...], index: int, default: Any = None) -> Any:
    return arguments[index] if len(arguments) > index else default


def _driver_options(options: Optional[Dict[str, Any]], supported: Dict[str, str]) -> Dict[str, Any]:
    kwargs = {}
    for key, value in (options or {}).items():
        if key not in supported:
            raise ValueError(f"Unsupported option '{key}'")
        kwargs[supported[key]] = value
    return kwargs


async def _materialize(cursor, max_documents: int) -> Tuple[list, bool]:
    # One extra document tells us the result was cut
    documents = await cursor.to_list(length=max_documents + 1)
    truncated = len(documents) > max_documents
    return documents[:max_documents], truncated


# =========================
# Reads
# =========================
async def _find(collection, arguments, limits):
    cursor = collection.find(
        _argument(arguments, 0, {}),
        _argument(arguments, 1),
        limit=limits.max_documents + 1,
        max_time_ms=limits.max_time_ms,
    )
    return await _materialize(cursor, limits.max_documents)


async def _aggregate(collection, arguments, limits):
    options = dict(_argument(arguments, 1, {}))
    options.setdefault("maxTimeMS", limits.max_time_ms)
    cursor = await collection.aggregate(arguments[0], **options)
    return await _materialize(cursor, limits.max_documents)


async def _count_documents(collection, arguments, limits):
    options = dict(_argument(arguments, 1, {}))
    options.setdefault("maxTimeMS", limits.max_time_ms)
    count = await collection.count_documents(_argument(arguments, 0, {}), **options)
    return count, False


# =========================
# Writes
# =========================
async def _insert_one(collection, arguments, limits):
    # The driver adds _id to the document it is given
    result = await collection.insert_one(dict(arguments[0]))
    return {"acknowledged": result.acknowledged, "insertedId": result.inserted_id}, False


async def _insert_many(collection, arguments, limits):
    options = _argument(arguments, 1, {})
    unknown = set(options) - {"ordered"}
    if unknown:
        raise ValueError(f"Unsupported option '{sorted(unknown)[0]}'")
    result = await collection.insert_many(
        [dict(document) for document in arguments[0]],
        ordered=options.get("ordered", True),
    )
    return {
        "acknowledged": result.acknowledged,
        "insertedCount": len(result.inserted_ids),
        "insertedIds": list(result.inserted_ids),
    }, False


def _update_summary(result) -> Dict[str, Any]:
    return {
        "acknowledged": result.acknowledged,
        "matchedCount": result.matched_count,
        "modifiedCount": result.modified_count,
        "upsertedId": result.upserted_id,
    }


async def _update_one(collection, arguments, limits):
    kwargs = _driver_options(_argument(arguments, 2), UPDATE_OPTIONS)
    result = await collection.update_one(arguments[0], arguments[1], **kwargs)
    return _update_summary(result), False


async def _update_many(collection, arguments, limits):
    kwargs = _driver_options(_argument(arguments, 2), UPDATE_OPTIONS)
    result = await collection.update_many(arguments[0], arguments[1], **kwargs)
    return _update_summary(result), False


async def _delete_one(collection, arguments, limits):
    kwargs = _driver_options(_argument(arguments, 1), DELETE_OPTIONS)
    result = await collection.delete_one(arguments[0], **kwargs)
    return {"acknowledged": result.acknowledged, "deletedCount": result.deleted_count}, False


async def _delete_many(collection, arguments, limits):
    kwargs = _driver_options(_argument(arguments, 1), DELETE_OPTIONS)
    result = await collection.delete_many(arguments[0], **kwargs)
    return {"acknowledged": result.acknowledged, "deletedCount": result.deleted_count}, False


HANDLERS: Dict[OperationKind, Handler] = {
    OperationKind.FIND: _find,
    OperationKind.AGGREGATE: _aggregate,
    OperationKind.COUNT_DOCUMENTS: _count_documents,
    OperationKind.INSERT_ONE: _insert_one,
    OperationKind.INSERT_MANY: _insert_many,
    OperationKind.UPDATE_ONE: _update_one,
    OperationKind.UPDATE_MANY: _update_many,
    OperationKind.DELETE_ONE: _delete_one,
    OperationKind.DELETE_MANY: _delete_many,
}


def to_json_compatible(value: Any) -> Any:
    """Convert BSON values (ObjectId, datetime, Regex) to relaxed Extended JSON."""
    return json.loads(
        json_util.dumps(value, json_options=json_util.RELAXED_JSON_OPTIONS)
    )


async def execute(
    operation: ParsedOperation,
    database: AsyncDatabase,
    max_documents: Optional[int] = None,
    max_time_ms: Optional[int] = None,
) -> ExecutionOutcome:
    """
    Run operation against database.

    Args:
        operation: Parsed query.
        database: Handle yielded by the connection resolver.
        max_documents: Cap for cursor results, extra documents are dropped
            and the outcome is flagged truncated.
        max_time_ms: Server-side time limit for reads.

    Returns:
        ExecutionOutcome with a JSON-compatible result, or the store's error message.
    """
    limits = Limits(
        max_documents=max_documents or settings.MAX_RESULT_DOCUMENTS,
        max_time_ms=max_time_ms or settings.QUERY_MAX_TIME_MS,
    )
    handler = HANDLERS[operation.operation_kind]
    try:
        collection = database[operation.collection_name]
        result, truncated = await handler(collection, operation.arguments, limits)
    except EXECUTION_ERRORS as error:
        logger.warning(
            f"{operation.operation_kind.value} on '{operation.collection_name}' failed: {error}"
        )
        return ExecutionOutcome.failure(str(error))

    if truncated:
        logger.info(
            f"Result of {operation.operation_kind.value} on '{operation.collection_name}' "
            f"truncated to {limits.max_documents} documents"
        )
    return ExecutionOutcome.success(to_json_compatible(result), truncated)
