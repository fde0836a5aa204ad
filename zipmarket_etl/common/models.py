"""Data models used across the pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Literal, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class IngestionSourceConfig:
    source_name: str
    source_url: str
    advisory_lock_key: int


@dataclass(frozen=True)
class DataQualityThresholds:
    max_parse_error_rate: float = 0.005
    max_latest_row_count_drop: float = 0.15
    min_core_metric_coverage: float = 0.95


@dataclass(frozen=True)
class ZipRecord:
    zip_code: str
    state_code: str
    city: str | None
    county: str | None
    latitude: float
    longitude: float
    is_target: bool


@dataclass(frozen=True)
class MarketRecord:
    zip_code: str
    period_begin: str
    period_end: str
    property_type_key: str
    median_sale_price: float | None
    median_list_price: float | None
    homes_sold: int | None
    new_listings: int | None
    avg_sale_to_list: float | None
    sold_above_list: float | None
    median_sale_price_mom: float | None
    median_sale_price_yoy: float | None
    median_list_price_mom: float | None
    median_list_price_yoy: float | None
    homes_sold_yoy: float | None
    new_listings_yoy: float | None
    avg_sale_to_list_yoy: float | None
    sold_above_list_yoy: float | None
    source_last_updated: str | None


# Tagged parse outcomes. Callers branch on ``kind`` and must handle every variant.


@dataclass(frozen=True)
class Skipped:
    kind: Literal["skip"] = "skip"


@dataclass(frozen=True)
class Rejected:
    reason: str
    kind: Literal["reject"] = "reject"


@dataclass(frozen=True)
class Accepted(Generic[T]):
    record: T
    kind: Literal["record"] = "record"

