"""Ingestion run lifecycle: locking, run bookkeeping, rejects and cleanup."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable

from zipmarket_etl.common.constants import MAX_ERROR_SUMMARY_LENGTH, MAX_REJECT_PAYLOAD_LENGTH
from zipmarket_etl.common.db import SqlExecutor
from zipmarket_etl.common.errors import ContractError, LockUnavailableError
from zipmarket_etl.common.ids import generate_run_id
from zipmarket_etl.common.logging import log_event
from zipmarket_etl.common.models import IngestionSourceConfig
from zipmarket_etl.common.time_utils import to_utc_iso, utc_now
from zipmarket_etl.ingest.source_download import DownloadedSource, download_source_to_temp_file

logger = logging.getLogger(__name__)

INSERT_INGESTION_RUN_SQL = """
INSERT INTO ingestion_run (
  run_id,
  status,
  source_name,
  source_url,
  source_checksum_sha256
)
VALUES (%s, 'running', %s, %s, %s)
"""

UPSERT_SOURCE_SNAPSHOT_SQL = """
INSERT INTO source_snapshot (
  snapshot_id,
  ingestion_run_id,
  source_name,
  source_url,
  source_checksum_sha256,
  downloaded_at
)
VALUES (%s, %s, %s, %s, %s, %s)
ON CONFLICT (source_name, source_checksum_sha256) DO UPDATE
SET
  ingestion_run_id = EXCLUDED.ingestion_run_id,
  source_url = EXCLUDED.source_url,
  downloaded_at = EXCLUDED.downloaded_at
"""

INSERT_INGESTION_REJECT_SQL = """
INSERT INTO ingestion_reject (
  ingestion_run_id,
  source_name,
  line_number,
  reject_reason,
  raw_payload
)
VALUES (%s, %s, %s, %s, %s)
"""

UPDATE_INGESTION_RUN_SQL = """
UPDATE ingestion_run
SET
  finished_at = %s,
  status = %s,
  rows_read = %s,
  rows_written = %s,
  rows_rejected = %s,
  error_summary = %s
WHERE run_id = %s
"""

TRY_ADVISORY_LOCK_SQL = "SELECT pg_try_advisory_lock(%s) AS locked"
RELEASE_ADVISORY_LOCK_SQL = "SELECT pg_advisory_unlock(%s)"

STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"

DownloadSourceFn = Callable[[str, str], DownloadedSource]


@dataclass(frozen=True)
class IngestionRejectRecord:
    reason: str
    line_number: int | None = None
    raw_payload: str | None = None


@dataclass(frozen=True)
class IngestionSummary:
    run_id: str
    source_name: str
    source_url: str
    source_checksum_sha256: str
    downloaded_at: str
    rows_read: int
    rows_written: int
    rows_rejected: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class IngestionCounters:
    rows_read: int = 0
    rows_written: int = 0
    rows_rejected: int = 0

    def increment(self, counter: str, count: int = 1) -> None:
        if counter not in ("rows_read", "rows_written", "rows_rejected"):
            raise ContractError(f"Unknown ingestion counter: {counter}")
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            raise ContractError(f"Expected positive integer increment for {counter}, received {count!r}")
        setattr(self, counter, getattr(self, counter) + count)


@dataclass
class IngestionJobContext:
    """Handed to the source-specific callback for one run."""

    run_id: str
    source: IngestionSourceConfig
    downloaded_source: DownloadedSource
    executor: SqlExecutor
    counters: IngestionCounters = field(default_factory=IngestionCounters)

    def increment_rows_read(self, count: int = 1) -> None:
        self.counters.increment("rows_read", count)

    def increment_rows_written(self, count: int = 1) -> None:
        self.counters.increment("rows_written", count)

    def reject(self, record: IngestionRejectRecord) -> None:
        raw_payload = record.raw_payload[:MAX_REJECT_PAYLOAD_LENGTH] if record.raw_payload is not None else None
        self.executor.query(
            INSERT_INGESTION_REJECT_SQL,
            [self.run_id, self.source.source_name, record.line_number, record.reason, raw_payload],
        )
        # Counted only once the reject row is persisted.
        self.counters.increment("rows_rejected")


def trim_error_summary(error: BaseException) -> str:
    message = str(error) or error.__class__.__name__
    if len(message) > MAX_ERROR_SUMMARY_LENGTH:
        return f"{message[: MAX_ERROR_SUMMARY_LENGTH - 3]}..."
    return message


def _acquire_advisory_lock(executor: SqlExecutor, source: IngestionSourceConfig) -> None:
    result = executor.query(TRY_ADVISORY_LOCK_SQL, [source.advisory_lock_key])
    locked = bool(result.rows[0].get("locked")) if result.rows else False
    if not locked:
        raise LockUnavailableError(f"Another {source.source_name} ingestion run is already in progress.")


def _finalize_ingestion_run(
    executor: SqlExecutor,
    run_id: str,
    status: str,
    counters: IngestionCounters,
    finished_at: datetime,
    error_summary: str | None,
) -> None:
    executor.query(
        UPDATE_INGESTION_RUN_SQL,
        [
            to_utc_iso(finished_at),
            status,
            counters.rows_read,
            counters.rows_written,
            counters.rows_rejected,
            error_summary,
            run_id,
        ],
    )


def run_ingestion_job(
    executor: SqlExecutor,
    source: IngestionSourceConfig,
    *,
    execute: Callable[[IngestionJobContext], None],
    download_source: DownloadSourceFn | None = None,
    create_run_id: Callable[[], str] | None = None,
    now: Callable[[], datetime] | None = None,
) -> IngestionSummary:
    """Run one ingestion for ``source`` under its advisory lock.

    Lock acquisition precedes the download, the download precedes the run row,
    and the run row precedes ``execute``. Once inserted, the run row is always
    finalized as ``succeeded`` or ``failed``. The scratch download and the lock
    are released on every exit path.
    """
    download_source = download_source or download_source_to_temp_file
    create_run_id = create_run_id or generate_run_id
    now = now or utc_now

    counters = IngestionCounters()
    run_id = create_run_id()
    downloaded_source: DownloadedSource | None = None
    inserted_run = False
    has_advisory_lock = False
    primary_error: BaseException | None = None
    started = time.monotonic()

    try:
        _acquire_advisory_lock(executor, source)
        has_advisory_lock = True
        log_event(logger, "advisory lock acquired", run_id=run_id, source=source.source_name, event="LOCK_ACQUIRED", status="ok")

        downloaded_source = download_source(source.source_name, source.source_url)

        executor.query(
            INSERT_INGESTION_RUN_SQL,
            [run_id, source.source_name, source.source_url, downloaded_source.checksum_sha256],
        )
        inserted_run = True

        executor.query(
            UPSERT_SOURCE_SNAPSHOT_SQL,
            [
                str(uuid.uuid4()),
                run_id,
                source.source_name,
                source.source_url,
                downloaded_source.checksum_sha256,
                to_utc_iso(downloaded_source.downloaded_at),
            ],
        )
        log_event(logger, "ingestion run started", run_id=run_id, source=source.source_name, event="RUN_STARTED", status="running")

        context = IngestionJobContext(
            run_id=run_id,
            source=source,
            downloaded_source=downloaded_source,
            executor=executor,
            counters=counters,
        )
        execute(context)
        _finalize_ingestion_run(executor, run_id, STATUS_SUCCEEDED, counters, now(), None)

        summary = IngestionSummary(
            run_id=run_id,
            source_name=source.source_name,
            source_url=source.source_url,
            source_checksum_sha256=downloaded_source.checksum_sha256,
            downloaded_at=to_utc_iso(downloaded_source.downloaded_at),
            rows_read=counters.rows_read,
            rows_written=counters.rows_written,
            rows_rejected=counters.rows_rejected,
        )
        log_event(
            logger,
            "ingestion run succeeded",
            run_id=run_id,
            source=source.source_name,
            event="RUN_SUCCEEDED",
            status=STATUS_SUCCEEDED,
            rows_read=counters.rows_read,
            rows_written=counters.rows_written,
            rows_rejected=counters.rows_rejected,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
    except BaseException as exc:
        primary_error = exc
        if inserted_run:
            try:
                _finalize_ingestion_run(executor, run_id, STATUS_FAILED, counters, now(), trim_error_summary(exc))
            except Exception:
                logger.exception("failed to record failed status for run %s", run_id)
            log_event(
                logger,
                f"ingestion run failed: {trim_error_summary(exc)}",
                level=logging.ERROR,
                run_id=run_id,
                source=source.source_name,
                event="RUN_FAILED",
                status=STATUS_FAILED,
                rows_read=counters.rows_read,
                rows_written=counters.rows_written,
                rows_rejected=counters.rows_rejected,
                error_code=getattr(exc, "error_code", "UNEXPECTED_ERROR"),
            )
        raise
    finally:
        cleanup_error = _release_resources(executor, source, downloaded_source, has_advisory_lock, run_id)
        if cleanup_error is not None and primary_error is None:
            raise cleanup_error

    return summary


def _release_resources(
    executor: SqlExecutor,
    source: IngestionSourceConfig,
    downloaded_source: DownloadedSource | None,
    has_advisory_lock: bool,
    run_id: str,
) -> Exception | None:
    first_error: Exception | None = None

    if downloaded_source is not None:
        try:
            downloaded_source.cleanup()
        except Exception as exc:
            first_error = exc
            logger.exception("failed to clean up %s scratch file for run %s", source.source_name, run_id)

    if has_advisory_lock:
        try:
            executor.query(RELEASE_ADVISORY_LOCK_SQL, [source.advisory_lock_key])
            log_event(logger, "advisory lock released", run_id=run_id, source=source.source_name, event="LOCK_RELEASED", status="ok")
        except Exception as exc:
            first_error = first_error or exc
            logger.exception("failed to release %s advisory lock", source.source_name)

    return first_error

