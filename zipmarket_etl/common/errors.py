"""Domain errors and failure typing."""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for pipeline failures."""

    error_code = "PIPELINE_ERROR"


class ConfigError(PipelineError):
    """Raised for invalid or missing configuration."""

    error_code = "CONFIG_ERROR"


class ContractError(PipelineError):
    """Raised when a caller or collaborator breaks an internal contract."""

    error_code = "CONTRACT_ERROR"


class StageError(PipelineError):
    """Raised for run-level failures that abort an ingestion."""

    error_code = "STAGE_ERROR"


class LockUnavailableError(PipelineError):
    """Raised when another run already holds the source advisory lock."""

    error_code = "LOCK_UNAVAILABLE"


class HeaderValidationError(StageError):
    """Raised when a source header is structurally unusable."""

    error_code = "HEADER_INVALID"


class DataQualityError(StageError):
    """Raised when a data quality evaluation reports hard failures."""

    error_code = "DATA_QUALITY_FAILED"

    def __init__(self, message: str, report: Any = None) -> None:
        super().__init__(message)
        self.report = report
