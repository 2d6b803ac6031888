"""
Deadline helpers shared by the store, cache and notification code
"""
from contextlib import asynccontextmanager
from typing import Awaitable, TypeVar
import asyncio
import logging

from sqlalchemy.exc import DBAPIError

from utils.exceptions import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE raised by Postgres when statement_timeout cancels a query
QUERY_CANCELED = "57014"


def is_statement_timeout(error: BaseException) -> bool:
    if not isinstance(error, DBAPIError):
        return False
    orig = error.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == QUERY_CANCELED:
        return True
    return "statement timeout" in str(orig).lower()


async def with_timeout(awaitable: Awaitable[T], seconds: float, operation: str) -> T:
    """Await with a deadline, raising OperationTimeoutError when it expires."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        logger.warning(f"{operation} exceeded its {seconds}s deadline")
        raise OperationTimeoutError(operation=operation)


@asynccontextmanager
async def translate_timeouts(operation: str):
    """Turn driver level timeouts raised inside the block into OperationTimeoutError."""
    try:
        yield
    except OperationTimeoutError:
        raise
    except asyncio.TimeoutError:
        logger.warning(f"{operation} timed out")
        raise OperationTimeoutError(operation=operation)
    except DBAPIError as e:
        if is_statement_timeout(e):
            logger.warning(f"{operation} cancelled by statement timeout")
            raise OperationTimeoutError(operation=operation) from e
        raise
