from pathlib import Path

import pytest

from zipmarket_etl.common.config_loader import load_etl_config
from zipmarket_etl.common.errors import ConfigError


def test_load_etl_config_from_repo_config():
    config = load_etl_config(Path("config/etl.yml"), env={})

    assert config.source("geonames").advisory_lock_key == 209001
    assert config.source("redfin").advisory_lock_key == 209002
    assert config.source("geonames").source_url.endswith("/US.zip")
    assert config.timeout.connect == 20.0
    assert config.retry.max_attempts == 3
    assert config.thresholds.max_parse_error_rate == 0.005


def test_environment_overrides_and_blank_values_are_ignored():
    config = load_etl_config(
        Path("config/etl.yml"),
        env={
            "DATABASE_URL": "postgresql://override/db",
            "GEONAMES_US_ZIP_URL": "   ",
            "REDFIN_ZIP_FEED_URL": " https://mirror.test/feed.gz ",
        },
    )

    assert config.database_url == "postgresql://override/db"
    assert config.source("geonames").source_url == "https://download.geonames.org/export/zip/US.zip"
    assert config.source("redfin").source_url == "https://mirror.test/feed.gz"


def test_overlay_values_are_deep_merged(tmp_path: Path):
    overlay = tmp_path / "local.yml"
    overlay.write_text(
        """data_quality:
  max_parse_error_rate: 0.02
download:
  retry:
    max_attempts: 5
""",
        encoding="utf-8",
    )

    config = load_etl_config(Path("config/etl.yml"), overlay_path=overlay, env={})

    assert config.thresholds.max_parse_error_rate == 0.02
    assert config.thresholds.min_core_metric_coverage == 0.95
    assert config.retry.max_attempts == 5
    assert config.timeout.read == 300.0


def test_empty_overlay_file_is_ignored(tmp_path: Path):
    overlay = tmp_path / "local.yml"
    overlay.write_text("", encoding="utf-8")
    config = load_etl_config(Path("config/etl.yml"), overlay_path=overlay, env={})
    assert config.retry.max_attempts == 3


def test_missing_config_file_raises(tmp_path: Path):
    with pytest.raises(ConfigError):
        load_etl_config(tmp_path / "missing.yml", env={})


def test_unknown_source_lookup_raises():
    config = load_etl_config(Path("config/etl.yml"), env={})
    with pytest.raises(ConfigError):
        config.source("zillow")
