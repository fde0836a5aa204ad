from __future__ import annotations

import pytest

from zipmarket_etl.common.db import PostgresExecutor, QueryResult
from zipmarket_etl.common.errors import ContractError
from zipmarket_etl.pipeline.marts import MartRefreshSummary, refresh_marts


class FakeExecutor:
    def __init__(self, rows):
        self.rows = rows
        self.calls = []

    def query(self, text, params=None):
        self.calls.append((text, params))
        return QueryResult(rows=self.rows, row_count=len(self.rows))


class FakeCursor:
    def __init__(self, connection, rows, description):
        self.connection = connection
        self._rows = rows
        self.description = description
        self.rowcount = len(rows) if description else 3

    def __enter__(self):
        return self

    def __exit__(self, *_exc):
        return False

    def execute(self, text, params):
        self.connection.executed.append((text, params))

    def fetchall(self):
        return self._rows


class FakeConnection:
    def __init__(self, rows=None, description=None):
        self.autocommit = False
        self.closed = False
        self.executed = []
        self.cursor_factories = []
        self._rows = rows or []
        self._description = description

    def cursor(self, cursor_factory=None):
        self.cursor_factories.append(cursor_factory)
        return FakeCursor(self, self._rows, self._description)

    def close(self):
        self.closed = True


def test_refresh_marts_parses_counts():
    executor = FakeExecutor([{"updated_zip_rows": 12, "latest_rows": "40", "series_rows": 0}])

    summary = refresh_marts(executor)

    assert summary == MartRefreshSummary(updated_zip_rows=12, latest_rows=40, series_rows=0)
    assert "refresh_zipmarket_marts()" in executor.calls[0][0]


@pytest.mark.parametrize(
    "rows",
    [
        [],
        [{"updated_zip_rows": -1, "latest_rows": 0, "series_rows": 0}],
        [{"updated_zip_rows": None, "latest_rows": 0, "series_rows": 0}],
        [{"updated_zip_rows": "many", "latest_rows": 0, "series_rows": 0}],
    ],
)
def test_refresh_marts_rejects_malformed_results(rows):
    with pytest.raises(ContractError):
        refresh_marts(FakeExecutor(rows))


def test_postgres_executor_returns_dict_rows():
    connection = FakeConnection(rows=[{"locked": True}], description=[("locked",)])
    executor = PostgresExecutor(connection)

    result = executor.query("SELECT pg_try_advisory_lock(%s) AS locked", [209001])

    assert connection.autocommit is True
    assert connection.executed == [("SELECT pg_try_advisory_lock(%s) AS locked", (209001,))]
    assert result.rows == [{"locked": True}]
    assert result.row_count == 1


def test_postgres_executor_handles_statements_without_rows():
    connection = FakeConnection()
    executor = PostgresExecutor(connection)

    result = executor.query("UPDATE ingestion_run SET status = 'failed'")

    assert connection.executed == [("UPDATE ingestion_run SET status = 'failed'", None)]
    assert result.rows == []
    assert result.row_count == 3

    executor.close()
    assert connection.closed is True
