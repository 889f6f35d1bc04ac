import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, List, Optional

from pymongo import AsyncMongoClient
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import (
    ConfigurationError,
    InvalidName,
    NetworkTimeout,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from app.core import models
from app.core.config import settings
from app.core.crypto import decode_connection_target
from app.core.exceptions import StoreConnectionError


# -----------------------------------------------------------------------------
# CONNECTION RESOLVER
# Purpose: open a short-lived client to a managed database instance.
# Every caller gets its own client, closed when its block exits; nothing
# is pooled or shared between executions.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

# AuthenticationFailed, Unauthorized
AUTH_ERROR_CODES = {13, 18}

Connector = Callable[[models.DBInstance], AsyncContextManager[AsyncDatabase]]


def translate_error(error: BaseException) -> StoreConnectionError:
    """Map a driver failure to a StoreConnectionError tagged with its cause."""
    if isinstance(
        error, (ServerSelectionTimeoutError, NetworkTimeout, asyncio.TimeoutError)
    ):
        return StoreConnectionError(
            f"Timed out connecting to the database: {error}",
            kind=StoreConnectionError.TIMEOUT,
        )
    if isinstance(error, OperationFailure) and error.code in AUTH_ERROR_CODES:
        return StoreConnectionError(
            f"Database rejected the stored credentials: {error}",
            kind=StoreConnectionError.AUTHENTICATION,
        )
    if isinstance(error, (ConfigurationError, InvalidName)):
        return StoreConnectionError(
            f"Invalid connection target: {error}",
            kind=StoreConnectionError.INVALID_TARGET,
        )
    return StoreConnectionError(
        f"Database is unreachable: {error}",
        kind=StoreConnectionError.UNREACHABLE,
    )


@asynccontextmanager
async def connect(
    uri: str, database_name: str, timeout_ms: Optional[int] = None
) -> AsyncIterator[AsyncDatabase]:
    """
    Open a client for uri, verify it answers a ping and yield the database.

    The client is closed on every exit path, including errors raised by
    the caller inside the block.
    """
    timeout_ms = timeout_ms or settings.MONGO_CONNECT_TIMEOUT_MS
    try:
        client = AsyncMongoClient(
            uri,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            appname="querygate",
        )
    except PyMongoError as error:
        raise translate_error(error) from error
    except (TypeError, ValueError) as error:
        raise StoreConnectionError(
            f"Invalid connection target: {error}",
            kind=StoreConnectionError.INVALID_TARGET,
        ) from error

    try:
        try:
            database = client[database_name]
            await asyncio.wait_for(
                client.admin.command("ping"), timeout=timeout_ms / 1000 + 1
            )
        except (PyMongoError, asyncio.TimeoutError) as error:
            failure = translate_error(error)
            logger.warning(f"Connection to '{database_name}' failed ({failure.kind})")
            raise failure from error
        yield database
    finally:
        await client.close()


@asynccontextmanager
async def open_connection(
    instance: Optional[models.DBInstance],
    timeout_ms: Optional[int] = None,
    require_active: bool = True,
) -> AsyncIterator[AsyncDatabase]:
    """
    Resolve a DBInstance record to a live database handle.

    Example:
        async with open_connection(instance) as database:
            await database["users"].count_documents({})
    """
    if instance is None:
        raise StoreConnectionError(
            "Database instance no longer exists", kind=StoreConnectionError.INACTIVE
        )
    if require_active and not instance.is_active:
        raise StoreConnectionError(
            f"Database instance '{instance.name}' is inactive",
            kind=StoreConnectionError.INACTIVE,
        )

    uri = decode_connection_target(instance.encoded_connection_target)
    async with connect(uri, instance.database_name, timeout_ms) as database:
        yield database


async def _list_collections(database: AsyncDatabase) -> List[str]:
    try:
        names = await database.list_collection_names()
    except PyMongoError as error:
        raise translate_error(error) from error
    return sorted(names)


async def check_connection(
    uri: str, database_name: str, timeout_ms: Optional[int] = None
) -> List[str]:
    """Check an unsaved target is reachable and return its collection names."""
    async with connect(uri, database_name, timeout_ms) as database:
        return await _list_collections(database)


async def check_instance_connection(
    instance: models.DBInstance, timeout_ms: Optional[int] = None
) -> List[str]:
    """Same check for a stored instance, active or not. Persists nothing."""
    async with open_connection(instance, timeout_ms, require_active=False) as database:
        return await _list_collections(database)


# FastAPI dependency, overridden in tests
def get_connector() -> Connector:
    return open_connection
