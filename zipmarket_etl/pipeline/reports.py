"""Run summary report for one CLI invocation."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from zipmarket_etl.common.fs import write_json
from zipmarket_etl.common.time_utils import utc_timestamp_iso


def write_run_summary(
    report_path: Path,
    *,
    invocation_id: str,
    command: str,
    source_results: list[dict[str, Any]],
    error: dict[str, Any] | None = None,
) -> Path:
    totals = {"rows_read": 0, "rows_written": 0, "rows_rejected": 0}
    warning_count = 0

    for result in source_results:
        for key in totals:
            totals[key] += int(result.get(key, 0))
        report = result.get("data_quality_report") or {}
        warning_count += len(report.get("warnings", []))

    status = "success"
    if error is not None:
        status = "error"
    elif warning_count > 0:
        status = "partial"

    payload = {
        "invocation_id": invocation_id,
        "command": command,
        "generated_at": utc_timestamp_iso(),
        "status": status,
        "sources": [result.get("source_name") for result in source_results],
        "totals": totals,
        "warning_count": warning_count,
        "error": error,
        "source_results": source_results,
    }
    write_json(report_path, payload)
    return report_path
