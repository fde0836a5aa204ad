"""GeoNames US ZIP reference data: parsing and ``dim_zip`` ingestion."""

from __future__ import annotations

import io
import zipfile
from pathlib import Path
from typing import Iterable, Iterator, Union

from zipmarket_etl.common.constants import (
    GEONAMES_ADVISORY_LOCK_KEY,
    GEONAMES_SOURCE_NAME,
    TARGET_STATE_CODE,
)
from zipmarket_etl.common.db import SqlExecutor
from zipmarket_etl.common.errors import StageError
from zipmarket_etl.common.models import Accepted, IngestionSourceConfig, Rejected, ZipRecord
from zipmarket_etl.common.parsing import parse_finite_number
from zipmarket_etl.common.zip_code import is_valid_zip_code, normalise_state_code
from zipmarket_etl.ingest.framework import (
    IngestionJobContext,
    IngestionRejectRecord,
    IngestionSummary,
    run_ingestion_job,
)
from zipmarket_etl.ingest.line_reader import (
    DECODE_ERRORS,
    SOURCE_ENCODING,
    LineRecord,
    iter_file_lines,
    read_lines,
)

MIN_COLUMN_COUNT = 11
ARCHIVE_MEMBER_SUFFIX = "us.txt"

UPSERT_DIM_ZIP_SQL = """
INSERT INTO dim_zip (
  zip_code,
  state_code,
  city,
  county,
  latitude,
  longitude,
  geog,
  is_nj,
  updated_at
)
VALUES (
  %s,
  %s,
  %s,
  %s,
  %s,
  %s,
  ST_SetSRID(ST_MakePoint(%s, %s), 4326)::geography,
  %s,
  NOW()
)
ON CONFLICT (zip_code) DO UPDATE
SET
  state_code = EXCLUDED.state_code,
  city = EXCLUDED.city,
  county = EXCLUDED.county,
  latitude = EXCLUDED.latitude,
  longitude = EXCLUDED.longitude,
  geog = EXCLUDED.geog,
  is_nj = EXCLUDED.is_nj,
  updated_at = NOW()
"""

GeonamesParseResult = Union[Accepted[ZipRecord], Rejected]


def _parse_coordinate(raw: str, minimum: float, maximum: float) -> float | None:
    value = parse_finite_number(raw)
    if value is None or value < minimum or value > maximum:
        return None
    return value


def _optional_text(raw: str) -> str | None:
    cleaned = raw.strip()
    return cleaned or None


def parse_geonames_line(line: str) -> GeonamesParseResult:
    """Parse one tab-delimited GeoNames postal code row.

    Columns: country, postal code, place name, admin1 name, admin1 code,
    admin2 name, admin2 code, admin3 name, admin3 code, latitude, longitude,
    accuracy.
    """
    columns = line.split("\t")
    if len(columns) < MIN_COLUMN_COUNT:
        return Rejected("invalid_column_count")

    zip_code = columns[1].strip()
    if not is_valid_zip_code(zip_code):
        return Rejected("invalid_zip_code")

    state_code = normalise_state_code(columns[4])
    if state_code is None:
        return Rejected("invalid_state_code")

    latitude = _parse_coordinate(columns[9], -90.0, 90.0)
    if latitude is None:
        return Rejected("invalid_latitude")

    longitude = _parse_coordinate(columns[10], -180.0, 180.0)
    if longitude is None:
        return Rejected("invalid_longitude")

    return Accepted(
        ZipRecord(
            zip_code=zip_code,
            state_code=state_code,
            city=_optional_text(columns[2]),
            county=_optional_text(columns[5]),
            latitude=latitude,
            longitude=longitude,
            is_target=state_code == TARGET_STATE_CODE,
        )
    )


def _iter_archive_lines(path: Path) -> Iterator[LineRecord]:
    with zipfile.ZipFile(path) as archive:
        member = next(
            (name for name in archive.namelist() if name.lower().endswith(ARCHIVE_MEMBER_SUFFIX)),
            None,
        )
        if member is None:
            raise StageError("GeoNames source archive does not contain US.txt.")
        with archive.open(member) as raw:
            with io.TextIOWrapper(raw, encoding=SOURCE_ENCODING, errors=DECODE_ERRORS, newline=None) as stream:
                yield from read_lines(stream)


def iterate_geonames_source_lines(path: Path) -> Iterator[LineRecord]:
    if path.suffix.lower() == ".zip":
        return _iter_archive_lines(path)
    return iter_file_lines(path)


def upsert_dim_zip_record(executor: SqlExecutor, record: ZipRecord) -> None:
    executor.query(
        UPSERT_DIM_ZIP_SQL,
        [
            record.zip_code,
            record.state_code,
            record.city,
            record.county,
            record.latitude,
            record.longitude,
            record.longitude,
            record.latitude,
            record.is_target,
        ],
    )


def ingest_geonames_lines(lines: Iterable[LineRecord], context: IngestionJobContext) -> None:
    for line_record in lines:
        line = line_record.line
        if not line.strip():
            continue

        context.increment_rows_read()
        parsed = parse_geonames_line(line)
        if parsed.kind == "reject":
            context.reject(
                IngestionRejectRecord(
                    reason=parsed.reason,
                    line_number=line_record.line_number,
                    raw_payload=line,
                )
            )
            continue

        upsert_dim_zip_record(context.executor, parsed.record)
        context.increment_rows_written()


def run_geonames_ingestion(
    executor: SqlExecutor,
    source_url: str,
    *,
    advisory_lock_key: int = GEONAMES_ADVISORY_LOCK_KEY,
    **job_overrides,
) -> IngestionSummary:
    source = IngestionSourceConfig(
        source_name=GEONAMES_SOURCE_NAME,
        source_url=source_url,
        advisory_lock_key=advisory_lock_key,
    )

    def execute(context: IngestionJobContext) -> None:
        lines = iterate_geonames_source_lines(context.downloaded_source.file_path)
        ingest_geonames_lines(lines, context)

    return run_ingestion_job(executor, source, execute=execute, **job_overrides)
