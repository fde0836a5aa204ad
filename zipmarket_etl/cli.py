"""CLI entrypoint for the zipmarket ETL jobs."""

from __future__ import annotations

import argparse
import functools
import logging
import sys
from pathlib import Path
from typing import Any

from zipmarket_etl.common.config_loader import EtlConfig, load_etl_config
from zipmarket_etl.common.constants import (
    COMMANDS,
    EXIT_HARD_FAIL,
    EXIT_LOCK_UNAVAILABLE,
    EXIT_SUCCESS,
    GEONAMES_SOURCE_NAME,
    REDFIN_SOURCE_NAME,
)
from zipmarket_etl.common.db import SqlExecutor, connect_executor
from zipmarket_etl.common.errors import LockUnavailableError, PipelineError
from zipmarket_etl.common.http import HttpClient
from zipmarket_etl.common.ids import generate_invocation_id
from zipmarket_etl.common.logging import build_logger, log_event
from zipmarket_etl.ingest.framework import IngestionSummary
from zipmarket_etl.ingest.source_download import download_source_to_temp_file
from zipmarket_etl.pipeline.geonames import run_geonames_ingestion
from zipmarket_etl.pipeline.redfin import run_redfin_ingestion
from zipmarket_etl.pipeline.reports import write_run_summary

SOURCES_BY_COMMAND = {
    "geonames": (GEONAMES_SOURCE_NAME,),
    "redfin": (REDFIN_SOURCE_NAME,),
    "run-all": (GEONAMES_SOURCE_NAME, REDFIN_SOURCE_NAME),
}


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument("--config-path", default="./config/etl.yml")
    parser.add_argument("--overlay-config-path", default=None)
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARN", "ERROR"])
    parser.add_argument("--log-dir", default=None)
    parser.add_argument("--report-path", default=None)
    return parser.parse_args(argv)


def execute_source(
    source_name: str,
    executor: SqlExecutor,
    config: EtlConfig,
    client: HttpClient,
) -> IngestionSummary:
    source = config.source(source_name)
    download_source = functools.partial(download_source_to_temp_file, client=client)

    if source_name == GEONAMES_SOURCE_NAME:
        return run_geonames_ingestion(
            executor,
            source.source_url,
            advisory_lock_key=source.advisory_lock_key,
            download_source=download_source,
        )
    if source_name == REDFIN_SOURCE_NAME:
        return run_redfin_ingestion(
            executor,
            source.source_url,
            advisory_lock_key=source.advisory_lock_key,
            thresholds=config.thresholds,
            download_source=download_source,
        )
    raise ValueError(f"Unknown source: {source_name}")


def _error_payload(exc: BaseException) -> dict[str, Any]:
    return {
        "error_code": getattr(exc, "error_code", "UNEXPECTED_ERROR"),
        "message": str(exc) or exc.__class__.__name__,
    }


def _run_sources(
    args: argparse.Namespace,
    config: EtlConfig,
    logger: logging.Logger,
    invocation_id: str,
    source_results: list[dict[str, Any]],
) -> int:
    with (
        HttpClient(timeout=config.timeout, retry=config.retry) as client,
        connect_executor(config.database_url) as executor,
    ):
        for source_name in SOURCES_BY_COMMAND[args.command]:
            log_event(logger, f"{source_name} ingestion start", source=source_name, event="SOURCE_START", status="ok")
            try:
                summary = execute_source(source_name, executor, config, client)
            except LockUnavailableError as exc:
                log_event(
                    logger,
                    str(exc),
                    level=logging.WARNING,
                    source=source_name,
                    event="SOURCE_FAIL",
                    status="skipped",
                    error_code=exc.error_code,
                )
                _write_report(args, invocation_id, source_results, exc)
                return EXIT_LOCK_UNAVAILABLE
            except Exception as exc:
                log_event(
                    logger,
                    f"{source_name} ingestion failed: {exc}",
                    level=logging.ERROR,
                    source=source_name,
                    event="SOURCE_FAIL",
                    status="error",
                    error_code=getattr(exc, "error_code", "UNEXPECTED_ERROR"),
                )
                _write_report(args, invocation_id, source_results, exc)
                return EXIT_HARD_FAIL

            source_results.append(summary.to_dict())
            log_event(
                logger,
                f"{source_name} ingestion complete",
                run_id=summary.run_id,
                source=source_name,
                event="SOURCE_END",
                status="ok",
                rows_read=summary.rows_read,
                rows_written=summary.rows_written,
                rows_rejected=summary.rows_rejected,
            )

    _write_report(args, invocation_id, source_results, None)
    return EXIT_SUCCESS


def _write_report(
    args: argparse.Namespace,
    invocation_id: str,
    source_results: list[dict[str, Any]],
    exc: BaseException | None,
) -> None:
    if not args.report_path:
        return
    write_run_summary(
        Path(args.report_path),
        invocation_id=invocation_id,
        command=args.command,
        source_results=source_results,
        error=_error_payload(exc) if exc is not None else None,
    )


def run_command(args: argparse.Namespace) -> int:
    invocation_id = generate_invocation_id()
    log_dir = Path(args.log_dir) if args.log_dir else None
    logger = build_logger(invocation_id, log_dir=log_dir, level=args.log_level)
    overlay_path = Path(args.overlay_config_path) if args.overlay_config_path else None
    source_results: list[dict[str, Any]] = []

    try:
        config = load_etl_config(Path(args.config_path), overlay_path=overlay_path)
        return _run_sources(args, config, logger, invocation_id, source_results)
    except PipelineError as exc:
        log_event(logger, str(exc), level=logging.ERROR, event="COMMAND_FAIL", status="error", error_code=exc.error_code)
        _write_report(args, invocation_id, source_results, exc)
        return EXIT_HARD_FAIL
    except Exception as exc:
        log_event(
            logger,
            f"unexpected failure: {exc}",
            level=logging.ERROR,
            event="COMMAND_FAIL",
            status="error",
            error_code="UNEXPECTED_ERROR",
        )
        _write_report(args, invocation_id, source_results, exc)
        return EXIT_HARD_FAIL


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    return run_command(args)


if __name__ == "__main__":
    raise SystemExit(main())
