"""SQL executor contract and the psycopg2-backed implementation."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol, Sequence

import psycopg2
from psycopg2.extras import RealDictCursor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    row_count: int = 0


class SqlExecutor(Protocol):
    def query(self, text: str, params: Sequence[Any] | None = None) -> QueryResult:
        ...


class PostgresExecutor:
    """Runs parameterized statements on a single autocommit connection.

    Advisory locks are held by the database session, so lock acquire, the
    run's writes and lock release must all go through the same connection.
    """

    def __init__(self, connection) -> None:
        self._connection = connection
        self._connection.autocommit = True

    def query(self, text: str, params: Sequence[Any] | None = None) -> QueryResult:
        with self._connection.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(text, tuple(params) if params is not None else None)
            rows = [dict(row) for row in cursor.fetchall()] if cursor.description else []
            row_count = cursor.rowcount if cursor.rowcount >= 0 else len(rows)
        return QueryResult(rows=rows, row_count=row_count)

    def close(self) -> None:
        self._connection.close()


@contextmanager
def connect_executor(database_url: str, *, connect_timeout: int = 10) -> Iterator[PostgresExecutor]:
    connection = psycopg2.connect(database_url, connect_timeout=connect_timeout)
    executor = PostgresExecutor(connection)
    try:
        yield executor
    finally:
        executor.close()
        logger.debug("database connection closed")
