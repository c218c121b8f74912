# app/db/helpers.py
"""
Database helper functions for common patterns.
Keeps raw-SQL repositories free of cursor boilerplate.
"""

import asyncio
import functools
from collections.abc import Iterable, Sequence
from typing import Any

import psycopg

from app.db.pool import get_db_connection, get_db_transaction
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


async def fetch_one(
    query: str, params: tuple | dict = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """
    Execute query and return single row as dict.

    Args:
        query: SQL query with %s placeholders
        params: Query parameters
        connection: Optional existing connection (e.g. inside a transaction)

    Returns:
        Dict with row data or None if no results
    """
    try:
        if connection:
            async with connection.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchone()

        async with await get_db_connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchone()

    except psycopg.Error as e:
        logger.error("Database fetch_one error", query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation="fetch_one") from e


async def fetch_all(
    query: str, params: tuple | dict = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    """
    Execute query and return all rows as list of dicts.

    Args:
        query: SQL query with %s placeholders
        params: Query parameters
        connection: Optional existing connection

    Returns:
        List of dicts with row data
    """
    try:
        if connection:
            async with connection.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()

        async with await get_db_connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()

    except psycopg.Error as e:
        logger.error("Database fetch_all error", query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation="fetch_all") from e


async def execute_query(
    query: str, params: tuple | dict = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """
    Execute query and return number of affected rows.

    The rowcount is what conditional updates (compare-and-swap) rely on to
    tell the winning caller apart from the losers.
    """
    try:
        if connection:
            cursor = await connection.execute(query, params)
            return cursor.rowcount

        async with await get_db_connection() as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount

    except psycopg.Error as e:
        logger.error("Database execute error", query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation="execute") from e


async def execute_many(
    query: str,
    payload: Sequence[tuple | dict],
    *,
    connection: psycopg.AsyncConnection | None = None,
) -> None:
    """Execute the same statement for every parameter set in payload."""
    if not payload:
        return

    try:
        if connection:
            async with connection.cursor() as cur:
                await cur.executemany(query, payload)
            return

        async with await get_db_connection() as conn:
            async with conn.cursor() as cur:
                await cur.executemany(query, payload)

    except psycopg.Error as e:
        logger.error(
            "Database executemany error", query=query[:100], batch_size=len(payload), error=str(e)
        )
        raise DatabaseError(f"Batch failed: {e}", operation="execute_many") from e


async def execute_transaction(queries_and_params: Iterable[tuple]) -> bool:
    """
    Execute multiple queries in a single transaction.

    Args:
        queries_and_params: (query, params) tuples; params may also be a list of
            parameter sets, in which case the statement runs once per set.

    Example:
        await execute_transaction([
            ("DELETE FROM group_records WHERE group_id = %s", (group_id,)),
            ("INSERT INTO group_records (group_id, status) VALUES (%s, 'calculating')", (group_id,)),
        ])
    """
    statements = list(queries_and_params)
    try:
        async with await get_db_transaction() as conn:
            async with conn.cursor() as cur:
                for query, params in statements:
                    if isinstance(params, list):
                        if params:
                            await cur.executemany(query, params)
                    else:
                        await cur.execute(query, params)

        logger.debug("Transaction completed successfully", query_count=len(statements))
        return True

    except psycopg.Error as e:
        logger.error("Transaction failed", query_count=len(statements), error=str(e))
        raise DatabaseError(f"Transaction failed: {e}", operation="transaction") from e


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Decorator to retry database operations on temporary failures.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Base delay between retries (exponential backoff)
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except (psycopg.OperationalError, DatabaseError) as e:
                    transient = isinstance(e, psycopg.OperationalError) or (
                        isinstance(e, DatabaseError)
                        and isinstance(e.__cause__, psycopg.OperationalError)
                    )
                    if not transient:
                        raise
                    if attempt >= max_retries:
                        logger.error(
                            "Database operation failed after all retries",
                            operation=func.__name__,
                            attempts=max_retries + 1,
                            error=str(e),
                        )
                        raise DatabaseError(
                            f"Operation failed after {max_retries} retries: {e}",
                            operation=func.__name__,
                            recoverable=False,
                        ) from e

                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Database operation failed, retrying",
                        operation=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
