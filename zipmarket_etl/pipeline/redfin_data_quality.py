"""Post-ingestion data quality gate for the Redfin market feed.

Which findings block publication is fixed here: a parse error rate above the
threshold and a latest period older than the previous successful run are hard
failures. Row count drops, low metric coverage and unknown property types are
warnings. The numeric thresholds come from configuration.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping

from zipmarket_etl.common.constants import ALL_PROPERTY_TYPE_KEY, REDFIN_SOURCE_NAME
from zipmarket_etl.common.db import SqlExecutor
from zipmarket_etl.common.errors import ContractError
from zipmarket_etl.common.models import DataQualityThresholds

DEFAULT_REDFIN_DATA_QUALITY_THRESHOLDS = DataQualityThresholds()
UNKNOWN_PROPERTY_TYPE_REASON = "unknown_property_type"

SELECT_LATEST_PERIOD_FOR_RUN_SQL = """
SELECT MAX(period_end)::TEXT AS latest_period_end
FROM fact_zip_market_monthly
WHERE ingestion_run_id = %s
  AND property_type_key = %s
"""

SELECT_PREVIOUS_SUCCESSFUL_RUN_SQL = """
SELECT run_id
FROM ingestion_run
WHERE source_name = %s
  AND status = 'succeeded'
  AND run_id <> %s
ORDER BY COALESCE(finished_at, started_at) DESC, run_id DESC
LIMIT 1
"""

SELECT_LATEST_ROW_COUNT_FOR_RUN_PERIOD_SQL = """
SELECT COUNT(*)::INT AS row_count
FROM fact_zip_market_monthly
WHERE ingestion_run_id = %s
  AND property_type_key = %s
  AND period_end = %s
"""

SELECT_CORE_METRIC_COVERAGE_SQL = """
SELECT
  COUNT(*)::INT AS total_rows,
  COUNT(*) FILTER (WHERE median_sale_price IS NOT NULL)::INT AS median_sale_price_non_null,
  COUNT(*) FILTER (WHERE homes_sold IS NOT NULL)::INT AS homes_sold_non_null,
  COUNT(*) FILTER (WHERE avg_sale_to_list IS NOT NULL)::INT AS avg_sale_to_list_non_null,
  COUNT(*) FILTER (WHERE sold_above_list IS NOT NULL)::INT AS sold_above_list_non_null
FROM fact_zip_market_monthly
WHERE ingestion_run_id = %s
  AND property_type_key = %s
  AND period_end = %s
"""

SELECT_REJECT_REASON_COUNT_SQL = """
SELECT COUNT(*)::INT AS row_count
FROM ingestion_reject
WHERE ingestion_run_id = %s
  AND source_name = %s
  AND reject_reason = %s
"""

CORE_METRICS = ("median_sale_price", "homes_sold", "avg_sale_to_list", "sold_above_list")


@dataclass(frozen=True)
class CoreMetricCoverage:
    median_sale_price: float = 0.0
    homes_sold: float = 0.0
    avg_sale_to_list: float = 0.0
    sold_above_list: float = 0.0


@dataclass(frozen=True)
class RedfinDataQualityReport:
    run_id: str
    rows_read: int
    rows_rejected: int
    parse_error_rate: float
    latest_period_end: str | None
    previous_latest_period_end: str | None
    latest_row_count: int
    previous_latest_row_count: int | None
    unknown_property_type_rejects: int
    core_metric_coverage: CoreMetricCoverage
    warnings: list[str] = field(default_factory=list)
    hard_failure_reasons: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.hard_failure_reasons


def _parse_count(value: object, field_name: str) -> int:
    if isinstance(value, bool):
        raise ContractError(f"Expected {field_name} to be a non-negative integer, received {value!r}.")
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ContractError(f"Expected {field_name} to be a non-negative integer, received {value!r}.") from exc
    if not parsed.is_integer() or parsed < 0:
        raise ContractError(f"Expected {field_name} to be a non-negative integer, received {value!r}.")
    return int(parsed)


def _coverage_ratio(non_null_count: int, total_count: int) -> float:
    if total_count <= 0:
        return 0.0
    return non_null_count / total_count


def format_percent(value: float) -> str:
    return f"{value * 100:.2f}%"


def normalize_thresholds(
    overrides: DataQualityThresholds | Mapping[str, float] | None,
) -> DataQualityThresholds:
    if overrides is None:
        return DEFAULT_REDFIN_DATA_QUALITY_THRESHOLDS
    if isinstance(overrides, DataQualityThresholds):
        return overrides
    known = {f.name for f in fields(DataQualityThresholds)}
    unknown = set(overrides) - known
    if unknown:
        raise ContractError(f"Unknown data quality thresholds: {', '.join(sorted(unknown))}")
    values = {key: float(value) for key, value in overrides.items() if value is not None}
    return replace(DEFAULT_REDFIN_DATA_QUALITY_THRESHOLDS, **values)


def _first_row(executor: SqlExecutor, sql: str, params: list[Any]) -> dict[str, Any] | None:
    result = executor.query(sql, params)
    return result.rows[0] if result.rows else None


def select_latest_period_for_run(executor: SqlExecutor, run_id: str) -> str | None:
    row = _first_row(executor, SELECT_LATEST_PERIOD_FOR_RUN_SQL, [run_id, ALL_PROPERTY_TYPE_KEY])
    if row is None or row.get("latest_period_end") is None:
        return None
    return str(row["latest_period_end"])


def select_latest_row_count(executor: SqlExecutor, run_id: str, period_end: str) -> int:
    row = _first_row(
        executor,
        SELECT_LATEST_ROW_COUNT_FOR_RUN_PERIOD_SQL,
        [run_id, ALL_PROPERTY_TYPE_KEY, period_end],
    )
    return _parse_count(row.get("row_count", 0) if row else 0, "latest_row_count")


def select_core_metric_coverage(executor: SqlExecutor, run_id: str, period_end: str) -> CoreMetricCoverage:
    row = _first_row(executor, SELECT_CORE_METRIC_COVERAGE_SQL, [run_id, ALL_PROPERTY_TYPE_KEY, period_end])
    if row is None:
        return CoreMetricCoverage()

    total_rows = _parse_count(row.get("total_rows"), "coverage_total_rows")
    ratios = {
        metric: _coverage_ratio(
            _parse_count(row.get(f"{metric}_non_null"), f"{metric}_non_null"),
            total_rows,
        )
        for metric in CORE_METRICS
    }
    return CoreMetricCoverage(**ratios)


def select_previous_successful_run_id(executor: SqlExecutor, run_id: str) -> str | None:
    row = _first_row(executor, SELECT_PREVIOUS_SUCCESSFUL_RUN_SQL, [REDFIN_SOURCE_NAME, run_id])
    if row is None or row.get("run_id") is None:
        return None
    return str(row["run_id"])


def select_reject_reason_count(executor: SqlExecutor, run_id: str, reason: str) -> int:
    row = _first_row(executor, SELECT_REJECT_REASON_COUNT_SQL, [run_id, REDFIN_SOURCE_NAME, reason])
    return _parse_count(row.get("row_count", 0) if row else 0, f"{reason}_reject_count")


def evaluate_redfin_data_quality(
    executor: SqlExecutor,
    *,
    run_id: str,
    rows_read: int,
    rows_rejected: int,
    thresholds: DataQualityThresholds | Mapping[str, float] | None = None,
) -> RedfinDataQualityReport:
    """Compute the quality report for an ingested run. Issues read-only queries."""
    limits = normalize_thresholds(thresholds)

    rows_read = _parse_count(rows_read, "rows_read")
    rows_rejected = _parse_count(rows_rejected, "rows_rejected")
    parse_error_rate = 0.0 if rows_read == 0 else rows_rejected / rows_read

    latest_period_end = select_latest_period_for_run(executor, run_id)
    latest_row_count = 0 if latest_period_end is None else select_latest_row_count(executor, run_id, latest_period_end)
    coverage = (
        CoreMetricCoverage()
        if latest_period_end is None
        else select_core_metric_coverage(executor, run_id, latest_period_end)
    )

    previous_run_id = select_previous_successful_run_id(executor, run_id)
    previous_latest_period_end = (
        None if previous_run_id is None else select_latest_period_for_run(executor, previous_run_id)
    )
    previous_latest_row_count = (
        None
        if previous_run_id is None or previous_latest_period_end is None
        else select_latest_row_count(executor, previous_run_id, previous_latest_period_end)
    )

    unknown_property_type_rejects = select_reject_reason_count(executor, run_id, UNKNOWN_PROPERTY_TYPE_REASON)

    warnings: list[str] = []
    hard_failures: list[str] = []

    if parse_error_rate > limits.max_parse_error_rate:
        hard_failures.append(
            f"parse_error_rate_exceeded:{format_percent(parse_error_rate)}>{format_percent(limits.max_parse_error_rate)}"
        )

    # ISO dates order correctly as strings.
    if (
        latest_period_end is not None
        and previous_latest_period_end is not None
        and latest_period_end < previous_latest_period_end
    ):
        hard_failures.append(f"latest_period_regressed:{latest_period_end}<{previous_latest_period_end}")

    if (
        previous_latest_row_count is not None
        and previous_latest_row_count > 0
        and latest_row_count < previous_latest_row_count * (1 - limits.max_latest_row_count_drop)
    ):
        drop_ratio = 1 - latest_row_count / previous_latest_row_count
        warnings.append(
            f"latest_row_count_drop:{latest_row_count}<{previous_latest_row_count}({format_percent(drop_ratio)} drop)"
        )

    if latest_period_end is not None and latest_row_count > 0:
        for metric in CORE_METRICS:
            ratio = getattr(coverage, metric)
            if ratio < limits.min_core_metric_coverage:
                warnings.append(f"{metric}_coverage_low:{format_percent(ratio)}")

    if unknown_property_type_rejects > 0:
        warnings.append(f"unknown_property_type_detected:{unknown_property_type_rejects}")

    return RedfinDataQualityReport(
        run_id=run_id,
        rows_read=rows_read,
        rows_rejected=rows_rejected,
        parse_error_rate=parse_error_rate,
        latest_period_end=latest_period_end,
        previous_latest_period_end=previous_latest_period_end,
        latest_row_count=latest_row_count,
        previous_latest_row_count=previous_latest_row_count,
        unknown_property_type_rejects=unknown_property_type_rejects,
        core_metric_coverage=coverage,
        warnings=warnings,
        hard_failure_reasons=hard_failures,
    )


def format_redfin_data_quality_report(report: RedfinDataQualityReport) -> str:
    warning_text = ",".join(report.warnings) if report.warnings else "none"
    hard_failure_text = ",".join(report.hard_failure_reasons) if report.hard_failure_reasons else "none"
    return " ".join(
        [
            "redfin data_quality",
            f"run_id={report.run_id}",
            f"latest_period_end={report.latest_period_end or 'none'}",
            f"rows_read={report.rows_read}",
            f"rows_rejected={report.rows_rejected}",
            f"parse_error_rate={format_percent(report.parse_error_rate)}",
            f"latest_row_count={report.latest_row_count}",
            f"warnings={warning_text}",
            f"hard_failures={hard_failure_text}",
        ]
    )
