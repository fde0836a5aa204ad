"""Configuration loading and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from zipmarket_etl.common.errors import ConfigError
from zipmarket_etl.common.fs import read_yaml
from zipmarket_etl.common.http import RetryConfig, TimeoutConfig
from zipmarket_etl.common.models import DataQualityThresholds, IngestionSourceConfig
from zipmarket_etl.common.schema import validate_etl_config


@dataclass(frozen=True)
class EtlConfig:
    database_url: str
    sources: dict[str, IngestionSourceConfig]
    timeout: TimeoutConfig
    retry: RetryConfig
    thresholds: DataQualityThresholds

    def source(self, name: str) -> IngestionSourceConfig:
        try:
            return self.sources[name]
        except KeyError as exc:
            raise ConfigError(f"Unknown source: {name}") from exc


def _deep_merge(base: Any, overlay: Any) -> Any:
    if isinstance(base, dict) and isinstance(overlay, dict):
        merged = dict(base)
        for key, value in overlay.items():
            if key in merged:
                merged[key] = _deep_merge(merged[key], value)
            else:
                merged[key] = value
        return merged
    return overlay


def _load_yaml_with_overlay(path: Path, overlay_path: Path | None) -> dict:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    base = read_yaml(path) or {}
    if overlay_path is None or not overlay_path.exists():
        return base
    overlay = read_yaml(overlay_path) or {}
    return _deep_merge(base, overlay)


def _resolve_env_value(env: Mapping[str, str], key: str | None, default: str) -> str:
    # Blank environment values fall back to the configured default.
    if not key:
        return default
    configured = (env.get(key) or "").strip()
    return configured or default


def load_etl_config(
    config_path: Path,
    *,
    overlay_path: Path | None = None,
    env: Mapping[str, str] | None = None,
    allow_unknown: bool = False,
) -> EtlConfig:
    env = os.environ if env is None else env
    cfg = validate_etl_config(
        _load_yaml_with_overlay(config_path, overlay_path),
        allow_unknown=allow_unknown,
    )

    database_url = _resolve_env_value(env, cfg["database"]["url_env"], cfg["database"]["url"])
    sources = {
        name: IngestionSourceConfig(
            source_name=name,
            source_url=_resolve_env_value(env, source_cfg["url_env"], source_cfg["url"].strip()),
            advisory_lock_key=int(source_cfg["advisory_lock_key"]),
        )
        for name, source_cfg in cfg["sources"].items()
    }

    timeout_cfg = cfg["download"]["timeout"]
    retry_cfg = cfg["download"]["retry"]
    quality_cfg = cfg["data_quality"]

    return EtlConfig(
        database_url=database_url,
        sources=sources,
        timeout=TimeoutConfig(connect=float(timeout_cfg["connect"]), read=float(timeout_cfg["read"])),
        retry=RetryConfig(
            max_attempts=int(retry_cfg["max_attempts"]),
            multiplier=float(retry_cfg["multiplier"]),
            max_wait=float(retry_cfg["max_wait"]),
        ),
        thresholds=DataQualityThresholds(
            max_parse_error_rate=float(quality_cfg["max_parse_error_rate"]),
            max_latest_row_count_drop=float(quality_cfg["max_latest_row_count_drop"]),
            min_core_metric_coverage=float(quality_cfg["min_core_metric_coverage"]),
        ),
    )
