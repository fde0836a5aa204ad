"""Strict cell-level parsing shared by the source parsers."""

from __future__ import annotations

import math
import re
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime

_DECIMAL_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TRAILING_ZULU_RE = re.compile(r"\s*[zZ]$")

US_DATE_FORMATS = ("%m/%d/%Y", "%m/%d/%Y %H:%M:%S")

TRUE_VALUES = {"true", "t", "1", "yes"}
FALSE_VALUES = {"false", "f", "0", "no"}


class InvalidValue(ValueError):
    """Raised when a non-empty cell cannot be parsed."""


def is_missing(raw: str) -> bool:
    cleaned = raw.strip()
    return not cleaned or cleaned.upper() == "NA"


def parse_finite_number(raw: str) -> float | None:
    """Parse a plain decimal; returns None for anything else, including inf/nan."""
    cleaned = raw.strip()
    if not _DECIMAL_RE.match(cleaned):
        return None
    value = float(cleaned)
    return value if math.isfinite(value) else None


def parse_nullable_number(raw: str) -> float | None:
    if is_missing(raw):
        return None
    value = parse_finite_number(raw)
    if value is None:
        raise InvalidValue(raw)
    return value


def parse_nullable_integer(raw: str) -> int | None:
    value = parse_nullable_number(raw)
    if value is None:
        return None
    if not value.is_integer():
        raise InvalidValue(raw)
    return int(value)


def parse_iso_date(raw: str) -> str | None:
    cleaned = raw.strip()
    if not _ISO_DATE_RE.match(cleaned):
        return None
    try:
        return date.fromisoformat(cleaned).isoformat()
    except ValueError:
        return None


def _parse_datetime(cleaned: str) -> datetime:
    # ISO-8601 first, then US month/day dates, then RFC 2822 (HTTP-style) dates.
    try:
        return datetime.fromisoformat(_TRAILING_ZULU_RE.sub("+00:00", cleaned))
    except ValueError:
        pass
    for fmt in US_DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt)
        except ValueError:
            continue
    try:
        return parsedate_to_datetime(cleaned)
    except (TypeError, ValueError) as exc:
        raise InvalidValue(cleaned) from exc


def parse_nullable_timestamp(raw: str) -> str | None:
    """Normalise a timestamp to UTC ISO-8601; naive values are read as UTC."""
    if is_missing(raw):
        return None
    parsed = _parse_datetime(raw.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_boolean(raw: str) -> bool:
    cleaned = raw.strip().lower()
    if cleaned in TRUE_VALUES:
        return True
    if cleaned in FALSE_VALUES:
        return False
    raise InvalidValue(raw)
