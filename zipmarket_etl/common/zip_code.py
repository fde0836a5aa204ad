"""US ZIP code and state code validation."""

from __future__ import annotations

import re

ZIP_CODE_RE = re.compile(r"^\d{5}$")
STATE_CODE_RE = re.compile(r"^[A-Z]{2}$")
_REGION_ZIP_RE = re.compile(r"Zip Code:\s*(\d{5})", re.IGNORECASE)


def is_valid_zip_code(value: str) -> bool:
    return bool(ZIP_CODE_RE.match(value))


def normalise_state_code(raw: str | None) -> str | None:
    if raw is None:
        return None
    cleaned = raw.strip().upper()
    if not STATE_CODE_RE.match(cleaned):
        return None
    return cleaned


def extract_zip_from_region(region: str) -> str | None:
    # Market feeds label regions as "Zip Code: 07001".
    match = _REGION_ZIP_RE.search(region)
    if match is None:
        return None
    return match.group(1)
