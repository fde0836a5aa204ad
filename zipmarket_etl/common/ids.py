"""Run identifier helpers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone


def generate_run_id() -> str:
    return str(uuid.uuid4())


def generate_invocation_id() -> str:
    now = datetime.now(tz=timezone.utc)
    # Sortable id used to name CLI log files.
    return now.strftime("etl-%Y%m%dT%H%M%S%fZ")
