"""Minimal strict schemas for YAML config validation."""

from __future__ import annotations

from zipmarket_etl.common.errors import ConfigError


def _assert_required_keys(obj: dict, required: set[str], ctx: str) -> None:
    if not isinstance(obj, dict):
        raise ConfigError(f"{ctx} must be a mapping")
    missing = required - set(obj)
    if missing:
        missing_str = ", ".join(sorted(missing))
        raise ConfigError(f"Missing keys in {ctx}: {missing_str}")


def _assert_no_unknown_keys(obj: dict, known: set[str], ctx: str, allow_unknown: bool) -> None:
    if allow_unknown:
        return
    unknown = set(obj) - known
    if unknown:
        unknown_str = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown keys in {ctx}: {unknown_str}")


def _assert_ratio(value: object, ctx: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 1:
        raise ConfigError(f"{ctx} must be a number between 0 and 1")


def _assert_positive_number(value: object, ctx: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{ctx} must be a positive number")


def validate_source_config(cfg: dict, name: str, *, allow_unknown: bool = False) -> dict:
    ctx = f"sources.{name}"
    required = {"url", "url_env", "advisory_lock_key"}
    _assert_required_keys(cfg, required, ctx)
    _assert_no_unknown_keys(cfg, required, ctx, allow_unknown)

    if not isinstance(cfg["url"], str) or not cfg["url"].strip():
        raise ConfigError(f"{ctx}.url must be a non-empty string")
    lock_key = cfg["advisory_lock_key"]
    if isinstance(lock_key, bool) or not isinstance(lock_key, int):
        raise ConfigError(f"{ctx}.advisory_lock_key must be an integer")
    return cfg


def validate_etl_config(cfg: dict, *, allow_unknown: bool = False) -> dict:
    top_required = {"database", "sources", "download", "data_quality"}
    _assert_required_keys(cfg, top_required, "etl config")
    _assert_no_unknown_keys(cfg, top_required, "etl config", allow_unknown)

    _assert_required_keys(cfg["database"], {"url", "url_env"}, "database")

    known_sources = {"geonames", "redfin"}
    _assert_required_keys(cfg["sources"], known_sources, "sources")
    _assert_no_unknown_keys(cfg["sources"], known_sources, "sources", allow_unknown)
    for name, source_cfg in cfg["sources"].items():
        validate_source_config(source_cfg, name, allow_unknown=allow_unknown)

    lock_keys = [source_cfg["advisory_lock_key"] for source_cfg in cfg["sources"].values()]
    if len(set(lock_keys)) != len(lock_keys):
        raise ConfigError("sources must use distinct advisory_lock_key values")

    _assert_required_keys(cfg["download"], {"timeout", "retry"}, "download")
    _assert_required_keys(cfg["download"]["timeout"], {"connect", "read"}, "download.timeout")
    _assert_required_keys(
        cfg["download"]["retry"],
        {"max_attempts", "multiplier", "max_wait"},
        "download.retry",
    )
    for key, value in cfg["download"]["timeout"].items():
        _assert_positive_number(value, f"download.timeout.{key}")
    max_attempts = cfg["download"]["retry"]["max_attempts"]
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
        raise ConfigError("download.retry.max_attempts must be a positive integer")

    quality_keys = {"max_parse_error_rate", "max_latest_row_count_drop", "min_core_metric_coverage"}
    _assert_required_keys(cfg["data_quality"], quality_keys, "data_quality")
    _assert_no_unknown_keys(cfg["data_quality"], quality_keys, "data_quality", allow_unknown)
    for key in sorted(quality_keys):
        _assert_ratio(cfg["data_quality"][key], f"data_quality.{key}")

    return cfg
