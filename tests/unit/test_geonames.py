from __future__ import annotations

import zipfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from zipmarket_etl.common.db import QueryResult
from zipmarket_etl.common.errors import StageError
from zipmarket_etl.common.models import IngestionSourceConfig, ZipRecord
from zipmarket_etl.ingest.framework import IngestionJobContext
from zipmarket_etl.ingest.line_reader import LineRecord
from zipmarket_etl.ingest.source_download import DownloadedSource
from zipmarket_etl.pipeline.geonames import (
    ingest_geonames_lines,
    iterate_geonames_source_lines,
    parse_geonames_line,
)

AVENEL = "US\t07001\tAvenel\tNew Jersey\tNJ\tMiddlesex\t023\t\t\t40.5800\t-74.2700\t4"
MANHATTAN = "US\t10001\tNew York\tNew York\tNY\tNew York\t061\t\t\t40.7484\t-73.9967\t4"


class FakeExecutor:
    def __init__(self):
        self.calls: list[tuple[str, list]] = []

    def query(self, text, params=None):
        self.calls.append((text, list(params or [])))
        return QueryResult(rows=[], row_count=1)

    def statements(self, fragment: str) -> list[list]:
        return [params for text, params in self.calls if fragment in text]


def test_parse_geonames_line_accepts_reference_row():
    parsed = parse_geonames_line(AVENEL)

    assert parsed.kind == "record"
    assert parsed.record == ZipRecord(
        zip_code="07001",
        state_code="NJ",
        city="Avenel",
        county="Middlesex",
        latitude=40.58,
        longitude=-74.27,
        is_target=True,
    )


def test_parse_geonames_line_marks_other_states_as_not_target():
    parsed = parse_geonames_line(MANHATTAN)
    assert parsed.kind == "record"
    assert parsed.record.is_target is False


def test_parse_geonames_line_blank_city_and_county_become_none():
    columns = AVENEL.split("\t")
    columns[2] = " "
    columns[5] = ""
    parsed = parse_geonames_line("\t".join(columns))
    assert parsed.record.city is None
    assert parsed.record.county is None


@pytest.mark.parametrize(
    ("index", "value", "reason"),
    [
        (1, "ABC01", "invalid_zip_code"),
        (1, "0700", "invalid_zip_code"),
        (4, "New Jersey", "invalid_state_code"),
        (9, "95.0", "invalid_latitude"),
        (9, "north", "invalid_latitude"),
        (10, "-181", "invalid_longitude"),
        (10, "", "invalid_longitude"),
    ],
)
def test_parse_geonames_line_rejects_invalid_fields(index, value, reason):
    columns = AVENEL.split("\t")
    columns[index] = value
    parsed = parse_geonames_line("\t".join(columns))
    assert parsed.kind == "reject"
    assert parsed.reason == reason


def test_parse_geonames_line_rejects_short_rows():
    parsed = parse_geonames_line("US\t07001\tAvenel")
    assert parsed.kind == "reject"
    assert parsed.reason == "invalid_column_count"


def test_ingest_geonames_lines_upserts_and_rejects(tmp_path: Path):
    executor = FakeExecutor()
    context = IngestionJobContext(
        run_id="run-geo",
        source=IngestionSourceConfig("geonames", "https://example.test/US.zip", 209001),
        downloaded_source=DownloadedSource(
            file_path=tmp_path / "source.zip",
            checksum_sha256="abc",
            downloaded_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            size_bytes=0,
            cleanup=lambda: None,
        ),
        executor=executor,
    )
    bad = AVENEL.replace("07001", "ABC01")
    lines = [
        LineRecord(1, AVENEL),
        LineRecord(2, ""),
        LineRecord(3, bad),
        LineRecord(4, MANHATTAN),
    ]

    ingest_geonames_lines(lines, context)

    assert (context.counters.rows_read, context.counters.rows_written, context.counters.rows_rejected) == (3, 2, 1)
    upserts = executor.statements("INSERT INTO dim_zip")
    assert upserts[0] == ["07001", "NJ", "Avenel", "Middlesex", 40.58, -74.27, -74.27, 40.58, True]
    assert executor.statements("INSERT INTO ingestion_reject") == [["run-geo", "geonames", 3, "invalid_zip_code", bad]]


def test_iterate_geonames_source_lines_reads_us_member_from_archive(tmp_path: Path):
    archive_path = tmp_path / "source.zip"
    with zipfile.ZipFile(archive_path, "w") as archive:
        archive.writestr("readme.txt", "ignore me\n")
        archive.writestr("US.txt", f"{AVENEL}\r\n{MANHATTAN}\r\n")

    lines = list(iterate_geonames_source_lines(archive_path))

    assert [line.line_number for line in lines] == [1, 2]
    assert lines[0].line == AVENEL


def test_iterate_geonames_source_lines_requires_us_member(tmp_path: Path):
    archive_path = tmp_path / "source.zip"
    with zipfile.ZipFile(archive_path, "w") as archive:
        archive.writestr("readme.txt", "nothing here\n")

    with pytest.raises(StageError):
        list(iterate_geonames_source_lines(archive_path))


def test_iterate_geonames_source_lines_reads_plain_text(tmp_path: Path):
    path = tmp_path / "US.txt"
    path.write_text(f"{AVENEL}\n", encoding="utf-8")
    assert [line.line for line in iterate_geonames_source_lines(path)] == [AVENEL]


def test_invalid_byte_in_one_row_does_not_abort_the_archive(tmp_path: Path):
    archive_path = tmp_path / "source.zip"
    latin1_row = AVENEL.replace("07001", "07002").replace("Avenel", "Caf\xe9").encode("latin-1")
    with zipfile.ZipFile(archive_path, "w") as archive:
        archive.writestr("US.txt", AVENEL.encode() + b"\n" + latin1_row + b"\n" + MANHATTAN.encode() + b"\n")
    executor = FakeExecutor()
    context = IngestionJobContext(
        run_id="run-geo",
        source=IngestionSourceConfig("geonames", "https://example.test/US.zip", 209001),
        downloaded_source=DownloadedSource(
            file_path=archive_path,
            checksum_sha256="abc",
            downloaded_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            size_bytes=archive_path.stat().st_size,
            cleanup=lambda: None,
        ),
        executor=executor,
    )

    ingest_geonames_lines(iterate_geonames_source_lines(archive_path), context)

    assert (context.counters.rows_read, context.counters.rows_written, context.counters.rows_rejected) == (3, 3, 0)
    cities = [params[2] for params in executor.statements("INSERT INTO dim_zip")]
    assert cities == ["Avenel", "Caf\ufffd", "New York"]
