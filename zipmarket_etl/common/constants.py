"""Application constants."""

USER_AGENT = "zipmarket-etl/0.1 (+data ingestion)"
COMMANDS = ("geonames", "redfin", "run-all")

EXIT_SUCCESS = 0
EXIT_HARD_FAIL = 20
EXIT_LOCK_UNAVAILABLE = 30

GEONAMES_SOURCE_NAME = "geonames"
REDFIN_SOURCE_NAME = "redfin"
GEONAMES_ADVISORY_LOCK_KEY = 209001
REDFIN_ADVISORY_LOCK_KEY = 209002

TARGET_STATE_CODE = "NJ"
ALL_PROPERTY_TYPE_KEY = "all"

MAX_ERROR_SUMMARY_LENGTH = 1024
MAX_REJECT_PAYLOAD_LENGTH = 4000

JSON_LOG_FIELDS = (
    "timestamp",
    "run_id",
    "source",
    "event",
    "status",
    "rows_read",
    "rows_written",
    "rows_rejected",
    "duration_ms",
    "error_code",
    "message",
)
