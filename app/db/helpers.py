# app/db/helpers.py
"""
Query helpers over an open psycopg connection.
psycopg errors are logged and re-raised as DatabaseError.
"""

from typing import Any

import psycopg

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

Params = tuple | dict[str, Any]


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable

    @property
    def is_unique_violation(self) -> bool:
        return isinstance(self.__cause__, psycopg.errors.UniqueViolation)


async def fetch_one(
    conn: psycopg.AsyncConnection, query: str, params: Params | None = None
) -> dict[str, Any] | None:
    """
    Execute query and return single row as dict.

    Args:
        conn: Open connection (rows come back as dicts via dict_row)
        query: SQL query with %s or %(name)s placeholders
        params: Query parameters

    Returns:
        Dict with row data or None if no results
    """
    try:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchone()
    except psycopg.Error as e:
        logger.error("Database fetch_one error", query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation="fetch_one") from e


async def fetch_all(
    conn: psycopg.AsyncConnection, query: str, params: Params | None = None
) -> list[dict[str, Any]]:
    try:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchall()
    except psycopg.Error as e:
        logger.error("Database fetch_all error", query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation="fetch_all") from e


async def fetch_val(
    conn: psycopg.AsyncConnection, query: str, params: Params | None = None
) -> Any:
    """First column of the first row, or None."""
    row = await fetch_one(conn, query, params)
    return next(iter(row.values())) if row else None


async def execute_query(
    conn: psycopg.AsyncConnection, query: str, params: Params | None = None
) -> int:
    """Execute query and return number of affected rows."""
    try:
        cursor = await conn.execute(query, params)
        return cursor.rowcount
    except psycopg.Error as e:
        logger.error("Database execute error", query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation="execute") from e
