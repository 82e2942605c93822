import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigurationError

load_dotenv(override=False)


def env_int(name, default):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError("INVALID_SETTING", f"{name} must be an integer.", {"value": raw}) from exc


def env_float(name, default):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError("INVALID_SETTING", f"{name} must be a number.", {"value": raw}) from exc


def env_bool(name, default="false"):
    value = os.getenv(name, default).strip().lower()
    return value in {"1", "true", "yes", "y", "on"}


# HTTP identity and endpoints
HEADERS = {"User-Agent": "crom-sync/1.0", "Content-Type": "application/json"}
CROM_API_URL = os.getenv("CROM_API_URL", "https://apiv1.crom.avn.sh/graphql")
TARGET_SITE_URL = os.getenv("TARGET_SITE_URL", "http://scp-wiki-cn.wikidot.com")
API_TIMEOUT = env_float("API_TIMEOUT", 60.0)  # Seconds per HTTP request

# Walk sizing
BATCH_SIZE = env_int("BATCH_SIZE", 10)  # Pages per query
TARGET_PAGES = env_int("TARGET_PAGES", 30849)  # Stop after this many pages
CHECKPOINT_INTERVAL = env_int("CHECKPOINT_INTERVAL", 2000)  # Pages between checkpoints
INCLUDE_USERS = env_bool("INCLUDE_USERS", "true")

# Throttling and quota controls
MAX_REQUESTS_PER_SECOND = env_float("MAX_REQUESTS_PER_SECOND", 1.8)
RATE_LIMIT_THRESHOLD = env_int("RATE_LIMIT_THRESHOLD", 200000)  # Wait for reset below this
WINDOW_SAFETY_BUFFER_SECONDS = env_float("WINDOW_SAFETY_BUFFER_SECONDS", 0.05)
QUOTA_SAFETY_MARGIN_SECONDS = env_float("QUOTA_SAFETY_MARGIN_SECONDS", 10.0)
QUOTA_MINIMUM_WAIT_SECONDS = env_float("QUOTA_MINIMUM_WAIT_SECONDS", 60.0)

# Failure handling
RETRY_THRESHOLD = env_int("RETRY_THRESHOLD", 5)  # Transient errors tolerated per window
RETRY_WINDOW_SECONDS = env_float("RETRY_WINDOW_SECONDS", 300.0)
RETRY_BACKOFF_SECONDS = env_float("RETRY_BACKOFF_SECONDS", 2.0)
RETRY_BACKOFF_MAX_SECONDS = env_float("RETRY_BACKOFF_MAX_SECONDS", 60.0)
RETRY_EXPONENTIAL = env_bool("RETRY_EXPONENTIAL", "true")

# Durable state locations
DATA_DIR = Path(os.getenv("CROM_DATA_DIR", "data"))
CHECKPOINT_DIR = Path(os.getenv("CHECKPOINT_DIR", str(DATA_DIR / "checkpoints")))
CHECKPOINT_INDEX_NAME = "checkpoints.sqlite"
CHECKPOINT_COMPRESS = env_bool("CHECKPOINT_COMPRESS", "false")
CHECKPOINT_PREFIX = "checkpoint-"
OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", str(DATA_DIR / "output")))
SINK_DB = os.getenv("SINK_DB") or None
HANDOFF_CHUNK_SIZE = env_int("HANDOFF_CHUNK_SIZE", 500)

SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"
CHECKPOINT_SCHEMA_FILE = SCHEMA_DIR / "checkpoint.schema.json"


@dataclass(frozen=True)
class PullConfig:
    """Per-run knobs; each historical pull variant is one instance of this."""

    endpoint: str = CROM_API_URL
    base_url: str = TARGET_SITE_URL
    batch_size: int = BATCH_SIZE
    target_pages: int = TARGET_PAGES
    checkpoint_interval: int = CHECKPOINT_INTERVAL
    include_users: bool = INCLUDE_USERS
    max_requests_per_second: float = MAX_REQUESTS_PER_SECOND
    rate_limit_threshold: int = RATE_LIMIT_THRESHOLD
    retry_threshold: int = RETRY_THRESHOLD
    retry_window_seconds: float = RETRY_WINDOW_SECONDS
    retry_backoff_seconds: float = RETRY_BACKOFF_SECONDS
    retry_backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS
    retry_exponential: bool = RETRY_EXPONENTIAL
    checkpoint_dir: Path = CHECKPOINT_DIR
    checkpoint_compress: bool = CHECKPOINT_COMPRESS
    output_dir: Path = OUTPUT_DIR
    sink_db: str | None = SINK_DB
    show_progress: bool = True

    def validate(self):
        """Raise ConfigurationError for values the pipeline cannot run with."""
        if not self.endpoint:
            raise ConfigurationError("INVALID_SETTING", "API endpoint is empty.")
        for field_name in ("batch_size", "target_pages", "checkpoint_interval", "retry_threshold"):
            value = getattr(self, field_name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigurationError(
                    "INVALID_SETTING", f"{field_name} must be a positive integer.", {"value": value}
                )
        if self.max_requests_per_second <= 0:
            raise ConfigurationError(
                "INVALID_SETTING",
                "max_requests_per_second must be positive.",
                {"value": self.max_requests_per_second},
            )
        if self.rate_limit_threshold < 0:
            raise ConfigurationError(
                "INVALID_SETTING",
                "rate_limit_threshold must not be negative.",
                {"value": self.rate_limit_threshold},
            )
        for field_name in ("retry_window_seconds", "retry_backoff_seconds", "retry_backoff_max_seconds"):
            value = getattr(self, field_name)
            if value < 0:
                raise ConfigurationError("INVALID_SETTING", f"{field_name} must not be negative.", {"value": value})
        return self

    def with_overrides(self, **overrides):
        """Return a copy with the non-None overrides applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)
