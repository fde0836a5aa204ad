"""Redfin ZIP market tracker: header-driven parsing and ``fact_zip_market_monthly`` ingestion."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import Iterable, Literal, Mapping, Union

from zipmarket_etl.common.constants import (
    REDFIN_ADVISORY_LOCK_KEY,
    REDFIN_SOURCE_NAME,
    TARGET_STATE_CODE,
)
from zipmarket_etl.common.db import SqlExecutor
from zipmarket_etl.common.errors import ContractError, DataQualityError, HeaderValidationError, StageError
from zipmarket_etl.common.logging import log_event
from zipmarket_etl.common.models import (
    Accepted,
    DataQualityThresholds,
    IngestionSourceConfig,
    MarketRecord,
    Rejected,
    Skipped,
)
from zipmarket_etl.common.parsing import (
    InvalidValue,
    parse_boolean,
    parse_iso_date,
    parse_nullable_integer,
    parse_nullable_number,
    parse_nullable_timestamp,
)
from zipmarket_etl.common.zip_code import extract_zip_from_region
from zipmarket_etl.ingest.framework import (
    IngestionJobContext,
    IngestionRejectRecord,
    IngestionSummary,
    run_ingestion_job,
)
from zipmarket_etl.ingest.line_reader import LineRecord, iter_file_lines
from zipmarket_etl.pipeline.marts import MartRefreshSummary, refresh_marts
from zipmarket_etl.pipeline.redfin_data_quality import (
    RedfinDataQualityReport,
    evaluate_redfin_data_quality,
    format_redfin_data_quality_report,
)

logger = logging.getLogger(__name__)

TARGET_REGION_TYPE = "zip code"

REQUIRED_REDFIN_COLUMNS = (
    "REGION_TYPE",
    "STATE_CODE",
    "IS_SEASONALLY_ADJUSTED",
    "PROPERTY_TYPE",
    "REGION",
    "PERIOD_BEGIN",
    "PERIOD_END",
    "LAST_UPDATED",
    "MEDIAN_SALE_PRICE",
    "MEDIAN_LIST_PRICE",
    "HOMES_SOLD",
    "NEW_LISTINGS",
    "AVG_SALE_TO_LIST",
    "SOLD_ABOVE_LIST",
    "MEDIAN_SALE_PRICE_MOM",
    "MEDIAN_SALE_PRICE_YOY",
    "MEDIAN_LIST_PRICE_MOM",
    "MEDIAN_LIST_PRICE_YOY",
    "HOMES_SOLD_YOY",
    "NEW_LISTINGS_YOY",
    "AVG_SALE_TO_LIST_YOY",
    "SOLD_ABOVE_LIST_YOY",
)

PROPERTY_TYPE_BY_SOURCE_VALUE = {
    "All Residential": "all",
    "Single Family Residential": "single_family",
    "Condo/Co-op": "condo_coop",
    "Townhouse": "townhouse",
    "Multi-Family (2-4 Unit)": "multi_family",
}

# (source column, record field), checked in this order.
INTEGER_FIELDS = (
    ("HOMES_SOLD", "homes_sold"),
    ("NEW_LISTINGS", "new_listings"),
)
NUMERIC_FIELDS = (
    ("MEDIAN_SALE_PRICE", "median_sale_price"),
    ("MEDIAN_LIST_PRICE", "median_list_price"),
    ("AVG_SALE_TO_LIST", "avg_sale_to_list"),
    ("SOLD_ABOVE_LIST", "sold_above_list"),
    ("MEDIAN_SALE_PRICE_MOM", "median_sale_price_mom"),
    ("MEDIAN_SALE_PRICE_YOY", "median_sale_price_yoy"),
    ("MEDIAN_LIST_PRICE_MOM", "median_list_price_mom"),
    ("MEDIAN_LIST_PRICE_YOY", "median_list_price_yoy"),
    ("HOMES_SOLD_YOY", "homes_sold_yoy"),
    ("NEW_LISTINGS_YOY", "new_listings_yoy"),
    ("AVG_SALE_TO_LIST_YOY", "avg_sale_to_list_yoy"),
    ("SOLD_ABOVE_LIST_YOY", "sold_above_list_yoy"),
)

UPSERT_FACT_ZIP_MARKET_SQL = """
INSERT INTO fact_zip_market_monthly (
  zip_code,
  period_begin,
  period_end,
  property_type_key,
  median_sale_price,
  median_list_price,
  homes_sold,
  new_listings,
  avg_sale_to_list,
  sold_above_list,
  median_sale_price_mom,
  median_sale_price_yoy,
  median_list_price_mom,
  median_list_price_yoy,
  homes_sold_yoy,
  new_listings_yoy,
  avg_sale_to_list_yoy,
  sold_above_list_yoy,
  source_last_updated,
  ingestion_run_id
)
VALUES (
  %s, %s, %s, %s, %s,
  %s, %s, %s, %s, %s,
  %s, %s, %s, %s, %s,
  %s, %s, %s, %s, %s
)
ON CONFLICT (zip_code, period_end, property_type_key) DO UPDATE
SET
  period_begin = EXCLUDED.period_begin,
  median_sale_price = EXCLUDED.median_sale_price,
  median_list_price = EXCLUDED.median_list_price,
  homes_sold = EXCLUDED.homes_sold,
  new_listings = EXCLUDED.new_listings,
  avg_sale_to_list = EXCLUDED.avg_sale_to_list,
  sold_above_list = EXCLUDED.sold_above_list,
  median_sale_price_mom = EXCLUDED.median_sale_price_mom,
  median_sale_price_yoy = EXCLUDED.median_sale_price_yoy,
  median_list_price_mom = EXCLUDED.median_list_price_mom,
  median_list_price_yoy = EXCLUDED.median_list_price_yoy,
  homes_sold_yoy = EXCLUDED.homes_sold_yoy,
  new_listings_yoy = EXCLUDED.new_listings_yoy,
  avg_sale_to_list_yoy = EXCLUDED.avg_sale_to_list_yoy,
  sold_above_list_yoy = EXCLUDED.sold_above_list_yoy,
  source_last_updated = EXCLUDED.source_last_updated,
  ingestion_run_id = EXCLUDED.ingestion_run_id
"""

SELECT_ZIP_STATES_SQL = """
SELECT zip_code, state_code
FROM dim_zip
"""

RedfinHeaderMap = dict[str, int]
RedfinLineResult = Union[Skipped, Rejected, Accepted[MarketRecord]]


@dataclass(frozen=True)
class HeaderParsed:
    header_map: RedfinHeaderMap
    kind: Literal["header"] = "header"


@dataclass(frozen=True)
class RedfinIngestionSummary(IngestionSummary):
    data_quality_report: RedfinDataQualityReport
    mart_refresh: MartRefreshSummary


def normalize_cell(raw: str) -> str:
    trimmed = raw.strip()
    if len(trimmed) >= 2 and trimmed.startswith('"') and trimmed.endswith('"'):
        return trimmed[1:-1].replace('""', '"').strip()
    return trimmed


def _value_at(values: list[str], header_map: Mapping[str, int], key: str) -> str:
    index = header_map.get(key)
    if index is None or index >= len(values):
        return ""
    return values[index]


def parse_redfin_header(line: str) -> HeaderParsed | Rejected:
    header_map: RedfinHeaderMap = {}
    for index, column_name in enumerate(line.split("\t")):
        name = normalize_cell(column_name)
        if name and name not in header_map:
            header_map[name] = index

    missing = [column for column in REQUIRED_REDFIN_COLUMNS if column not in header_map]
    if missing:
        return Rejected(f"missing_required_columns:{','.join(missing)}")
    return HeaderParsed(header_map)


def parse_redfin_line(
    line: str,
    header_map: Mapping[str, int],
    zip_state_by_zip: Mapping[str, str],
) -> RedfinLineResult:
    """Classify one data row as skipped, rejected with a reason, or a normalized record."""
    values = [normalize_cell(value) for value in line.split("\t")]

    region_type = _value_at(values, header_map, "REGION_TYPE").strip().lower()
    if region_type != TARGET_REGION_TYPE:
        return Skipped()

    state_code = _value_at(values, header_map, "STATE_CODE").strip().upper()
    if state_code != TARGET_STATE_CODE:
        return Skipped()

    try:
        is_seasonally_adjusted = parse_boolean(_value_at(values, header_map, "IS_SEASONALLY_ADJUSTED"))
    except InvalidValue:
        return Rejected("invalid_is_seasonally_adjusted")
    if is_seasonally_adjusted:
        return Skipped()

    zip_code = extract_zip_from_region(_value_at(values, header_map, "REGION"))
    if zip_code is None:
        return Rejected("invalid_region_zip_code")

    reference_state = zip_state_by_zip.get(zip_code)
    if not reference_state:
        return Rejected("zip_not_found_in_dim_zip")
    if reference_state.upper() != TARGET_STATE_CODE:
        return Rejected("zip_state_mismatch")

    property_type_key = PROPERTY_TYPE_BY_SOURCE_VALUE.get(_value_at(values, header_map, "PROPERTY_TYPE").strip())
    if property_type_key is None:
        return Rejected("unknown_property_type")

    period_begin = parse_iso_date(_value_at(values, header_map, "PERIOD_BEGIN"))
    if period_begin is None:
        return Rejected("invalid_period_begin")

    period_end = parse_iso_date(_value_at(values, header_map, "PERIOD_END"))
    if period_end is None:
        return Rejected("invalid_period_end")

    try:
        source_last_updated = parse_nullable_timestamp(_value_at(values, header_map, "LAST_UPDATED"))
    except InvalidValue:
        return Rejected("invalid_last_updated")

    metrics: dict[str, float | int | None] = {}
    for column, field_name in INTEGER_FIELDS:
        try:
            metrics[field_name] = parse_nullable_integer(_value_at(values, header_map, column))
        except InvalidValue:
            return Rejected(f"invalid_{field_name}")
    for column, field_name in NUMERIC_FIELDS:
        try:
            metrics[field_name] = parse_nullable_number(_value_at(values, header_map, column))
        except InvalidValue:
            return Rejected(f"invalid_{field_name}")

    return Accepted(
        MarketRecord(
            zip_code=zip_code,
            period_begin=period_begin,
            period_end=period_end,
            property_type_key=property_type_key,
            source_last_updated=source_last_updated,
            **metrics,
        )
    )


def upsert_fact_zip_market_monthly(executor: SqlExecutor, record: MarketRecord, ingestion_run_id: str) -> None:
    executor.query(
        UPSERT_FACT_ZIP_MARKET_SQL,
        [
            record.zip_code,
            record.period_begin,
            record.period_end,
            record.property_type_key,
            record.median_sale_price,
            record.median_list_price,
            record.homes_sold,
            record.new_listings,
            record.avg_sale_to_list,
            record.sold_above_list,
            record.median_sale_price_mom,
            record.median_sale_price_yoy,
            record.median_list_price_mom,
            record.median_list_price_yoy,
            record.homes_sold_yoy,
            record.new_listings_yoy,
            record.avg_sale_to_list_yoy,
            record.sold_above_list_yoy,
            record.source_last_updated,
            ingestion_run_id,
        ],
    )


def load_zip_state_map(executor: SqlExecutor) -> dict[str, str]:
    result = executor.query(SELECT_ZIP_STATES_SQL)
    return {str(row["zip_code"]).strip(): str(row["state_code"]).strip().upper() for row in result.rows}


def ingest_redfin_lines(
    lines: Iterable[LineRecord],
    zip_state_by_zip: Mapping[str, str],
    context: IngestionJobContext,
) -> None:
    header_map: RedfinHeaderMap | None = None

    for line_record in lines:
        line = line_record.line
        if not line.strip():
            continue

        if header_map is None:
            parsed_header = parse_redfin_header(line)
            if parsed_header.kind == "reject":
                raise HeaderValidationError(f"Redfin header validation failed: {parsed_header.reason}")
            header_map = parsed_header.header_map
            continue

        context.increment_rows_read()
        parsed = parse_redfin_line(line, header_map, zip_state_by_zip)
        if parsed.kind == "skip":
            continue
        if parsed.kind == "reject":
            context.reject(
                IngestionRejectRecord(
                    reason=parsed.reason,
                    line_number=line_record.line_number,
                    raw_payload=line,
                )
            )
            continue

        upsert_fact_zip_market_monthly(context.executor, parsed.record, context.run_id)
        context.increment_rows_written()

    if header_map is None:
        raise StageError("Redfin source file is empty.")


def run_redfin_ingestion(
    executor: SqlExecutor,
    source_url: str,
    *,
    advisory_lock_key: int = REDFIN_ADVISORY_LOCK_KEY,
    thresholds: DataQualityThresholds | Mapping[str, float] | None = None,
    **job_overrides,
) -> RedfinIngestionSummary:
    """Ingest the Redfin feed, gate it on data quality, then refresh marts.

    A data quality hard failure raises inside the run, so the run is recorded
    as failed and marts are left untouched.
    """
    source = IngestionSourceConfig(
        source_name=REDFIN_SOURCE_NAME,
        source_url=source_url,
        advisory_lock_key=advisory_lock_key,
    )
    outcome: dict[str, object] = {}

    def execute(context: IngestionJobContext) -> None:
        zip_state_by_zip = load_zip_state_map(context.executor)
        ingest_redfin_lines(iter_file_lines(context.downloaded_source.file_path), zip_state_by_zip, context)

        report = evaluate_redfin_data_quality(
            context.executor,
            run_id=context.run_id,
            rows_read=context.counters.rows_read,
            rows_rejected=context.counters.rows_rejected,
            thresholds=thresholds,
        )
        outcome["data_quality_report"] = report
        log_event(
            logger,
            format_redfin_data_quality_report(report),
            level=logging.INFO if report.passed else logging.ERROR,
            run_id=context.run_id,
            source=REDFIN_SOURCE_NAME,
            event="DATA_QUALITY",
            status="ok" if report.passed else "error",
            rows_read=report.rows_read,
            rows_rejected=report.rows_rejected,
        )
        for warning in report.warnings:
            log_event(
                logger,
                f"data quality warning: {warning}",
                level=logging.WARNING,
                run_id=context.run_id,
                source=REDFIN_SOURCE_NAME,
                event="DATA_QUALITY_WARNING",
                status="warning",
            )

        if report.hard_failure_reasons:
            raise DataQualityError(
                f"Redfin data quality hard-fail: {'; '.join(report.hard_failure_reasons)}",
                report=report,
            )

        outcome["mart_refresh"] = refresh_marts(context.executor)

    summary = run_ingestion_job(executor, source, execute=execute, **job_overrides)

    report = outcome.get("data_quality_report")
    mart_refresh = outcome.get("mart_refresh")
    if not isinstance(report, RedfinDataQualityReport):
        raise ContractError("Expected Redfin data quality report to be generated.")
    if not isinstance(mart_refresh, MartRefreshSummary):
        raise ContractError("Expected marts refresh to run after Redfin ingestion.")

    return RedfinIngestionSummary(
        **{f.name: getattr(summary, f.name) for f in fields(IngestionSummary)},
        data_quality_report=report,
        mart_refresh=mart_refresh,
    )
