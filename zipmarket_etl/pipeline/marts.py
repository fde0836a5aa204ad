"""Downstream mart refresh, run only after a market ingest passes quality checks."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from zipmarket_etl.common.db import SqlExecutor
from zipmarket_etl.common.errors import ContractError

logger = logging.getLogger(__name__)

REFRESH_MARTS_SQL = """
SELECT updated_zip_rows, latest_rows, series_rows
FROM refresh_zipmarket_marts()
"""


@dataclass(frozen=True)
class MartRefreshSummary:
    updated_zip_rows: int
    latest_rows: int
    series_rows: int


def _non_negative_int(value: object, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ContractError(f"Expected {field_name} to be a non-negative integer, received {value!r}.")
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ContractError(f"Expected {field_name} to be a non-negative integer, received {value!r}.") from exc
    if parsed < 0:
        raise ContractError(f"Expected {field_name} to be a non-negative integer, received {value!r}.")
    return parsed


def refresh_marts(executor: SqlExecutor) -> MartRefreshSummary:
    result = executor.query(REFRESH_MARTS_SQL)
    if not result.rows:
        raise ContractError("Expected refresh_zipmarket_marts() to return one summary row.")

    row = result.rows[0]
    summary = MartRefreshSummary(
        updated_zip_rows=_non_negative_int(row.get("updated_zip_rows"), "updated_zip_rows"),
        latest_rows=_non_negative_int(row.get("latest_rows"), "latest_rows"),
        series_rows=_non_negative_int(row.get("series_rows"), "series_rows"),
    )
    logger.info("marts refreshed: %s", summary)
    return summary
