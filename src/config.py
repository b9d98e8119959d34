"""
Configuration for the traffic camera vehicle analysis pipeline.

Settings are read from the environment (a local .env file is honoured via
python-dotenv) and grouped into validated sections:
- InferenceConfig: external vision service
- SchedulerConfig: batching, concurrency, rate limiting and retries
- StorageConfig: data, image, log directories and database path
- PerformanceConfig: resource guards and retention
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from exceptions import ConfigurationError

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 50
MAX_CONCURRENT_REQUESTS = 10
MAX_RETRIES = 5

VALID_SAFETY_THRESHOLDS = (
    "BLOCK_NONE",
    "BLOCK_ONLY_HIGH",
    "BLOCK_MEDIUM_AND_ABOVE",
    "BLOCK_LOW_AND_ABOVE",
)


def _get_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {value!r}, using default {default}")
        return default


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid number for {name}: {value!r}, using default {default}")
        return default


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _clamp(name: str, value: int, upper: int) -> int:
    if value > upper:
        logger.warning(f"{name}={value} exceeds hard cap, using {upper}")
        return upper
    return value


@dataclass
class InferenceConfig:
    """External vision service settings."""
    api_key: Optional[str] = None
    model_name: str = "gemini-2.0-flash"
    request_timeout: float = 60.0
    safety_threshold: str = "BLOCK_MEDIUM_AND_ABOVE"

    def __post_init__(self):
        if not self.model_name:
            raise ValueError("Model name must not be empty")
        if self.request_timeout <= 0:
            raise ValueError("Request timeout must be positive")
        if self.safety_threshold not in VALID_SAFETY_THRESHOLDS:
            raise ValueError(f"Invalid safety threshold: {self.safety_threshold}")


@dataclass
class SchedulerConfig:
    """Batching, concurrency, rate limiting and retry settings."""
    interval_seconds: float = 300.0
    batch_size: int = 10
    max_concurrent_requests: int = 5
    rate_limit_delay: float = 2.0
    max_retries: int = 3
    base_retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    processing_timeout_minutes: float = 30.0
    run_on_start: bool = True

    def __post_init__(self):
        if self.interval_seconds <= 0:
            raise ValueError("Scheduler interval must be positive")
        if self.batch_size < 1:
            raise ValueError("Batch size must be at least 1")
        if self.max_concurrent_requests < 1:
            raise ValueError("Max concurrent requests must be at least 1")
        if self.max_retries < 1:
            raise ValueError("Max retries must be at least 1")
        if min(self.rate_limit_delay, self.base_retry_delay, self.max_retry_delay) < 0:
            raise ValueError("Delays must not be negative")
        if self.processing_timeout_minutes <= 0:
            raise ValueError("Processing timeout must be positive")

        self.batch_size = _clamp("batch_size", self.batch_size, MAX_BATCH_SIZE)
        self.max_concurrent_requests = _clamp(
            "max_concurrent_requests", self.max_concurrent_requests, MAX_CONCURRENT_REQUESTS
        )
        self.max_retries = _clamp("max_retries", self.max_retries, MAX_RETRIES)


@dataclass
class StorageConfig:
    """Filesystem locations."""
    data_dir: Path = field(default_factory=lambda: Path("data"))
    image_dir: Optional[Path] = None
    logs_dir: Optional[Path] = None
    database_path: Optional[Path] = None

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        self.image_dir = Path(self.image_dir) if self.image_dir else self.data_dir / "images"
        self.logs_dir = Path(self.logs_dir) if self.logs_dir else self.data_dir / "logs"
        self.database_path = (Path(self.database_path) if self.database_path
                              else self.data_dir / "traffic_analysis.db")

        for directory in (self.data_dir, self.image_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)


@dataclass
class PerformanceConfig:
    """Resource guards and retention."""
    memory_threshold: float = 0.9
    snapshot_retention_days: int = 30

    def __post_init__(self):
        if not 0 < self.memory_threshold <= 1:
            raise ValueError("Memory threshold must be between 0 and 1")
        if self.snapshot_retention_days < 1:
            raise ValueError("Snapshot retention must be at least one day")


class Config:
    def __init__(self, require_api_key: bool = True, load_env_file: bool = True):
        if load_env_file:
            load_dotenv()

        api_key = _get_str("GEMINI_API_KEY")
        if require_api_key and not api_key:
            raise ConfigurationError("Please set GEMINI_API_KEY in the environment or .env file")

        try:
            self.inference = InferenceConfig(
                api_key=api_key,
                model_name=_get_str("GEMINI_MODEL", "gemini-2.0-flash"),
                request_timeout=_get_float("GEMINI_REQUEST_TIMEOUT", 60.0),
                safety_threshold=_get_str("GEMINI_SAFETY_THRESHOLD", "BLOCK_MEDIUM_AND_ABOVE"),
            )
            self.scheduler = SchedulerConfig(
                interval_seconds=_get_float("SCHEDULER_INTERVAL", 300.0),
                batch_size=_get_int("SCHEDULER_BATCH_SIZE", 10),
                max_concurrent_requests=_get_int("SCHEDULER_MAX_CONCURRENT_REQUESTS", 5),
                rate_limit_delay=_get_float("SCHEDULER_RATE_LIMIT_DELAY", 2.0),
                max_retries=_get_int("SCHEDULER_MAX_RETRIES", 3),
                base_retry_delay=_get_float("SCHEDULER_BASE_RETRY_DELAY", 1.0),
                max_retry_delay=_get_float("SCHEDULER_MAX_RETRY_DELAY", 30.0),
                processing_timeout_minutes=_get_float("SCHEDULER_PROCESSING_TIMEOUT", 30.0),
                run_on_start=_get_bool("SCHEDULER_RUN_ON_START", True),
            )
            self.storage = StorageConfig(
                data_dir=Path(_get_str("STORAGE_DATA_DIR", "data")),
                database_path=_get_str("DATABASE_PATH"),
            )
            self.performance = PerformanceConfig(
                memory_threshold=_get_float("PERFORMANCE_MEMORY_THRESHOLD", 0.9),
                snapshot_retention_days=_get_int("PERFORMANCE_SNAPSHOT_RETENTION_DAYS", 30),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        if self.scheduler.max_concurrent_requests > self.scheduler.batch_size:
            logger.info(f"max_concurrent_requests ({self.scheduler.max_concurrent_requests}) "
                        f"exceeds batch_size ({self.scheduler.batch_size}); "
                        f"each batch runs as a single chunk")

    @classmethod
    def create_test_config(cls, **overrides) -> "Config":
        """
        Build an isolated configuration for tests.

        Uses a fresh temporary data directory (unless STORAGE_DATA_DIR is set),
        zero delays and a dummy API key. Keyword overrides are environment
        variable names, e.g. ``SCHEDULER_BATCH_SIZE='5'``.
        """
        env = {
            "GEMINI_API_KEY": "test_key",
            "SCHEDULER_RATE_LIMIT_DELAY": "0",
            "SCHEDULER_BASE_RETRY_DELAY": "0",
            "SCHEDULER_MAX_RETRY_DELAY": "0",
            "PERFORMANCE_MEMORY_THRESHOLD": "1.0",
        }
        if not os.getenv("STORAGE_DATA_DIR"):
            env["STORAGE_DATA_DIR"] = tempfile.mkdtemp(prefix="traffic_test_")
        env.update({key: str(value) for key, value in overrides.items()})

        previous = {key: os.environ.get(key) for key in env}
        os.environ.update(env)
        try:
            return cls(load_env_file=False)
        finally:
            for key, value in previous.items():
                if value is None:
                    os.environ.pop(key, None)
                else:
                    os.environ[key] = value

    def get_summary(self) -> dict:
        """Effective settings with secrets redacted."""
        return {
            'inference': {
                'model': self.inference.model_name,
                'api_key_configured': bool(self.inference.api_key),
                'request_timeout': self.inference.request_timeout,
                'safety_threshold': self.inference.safety_threshold,
            },
            'scheduler': {
                'interval_seconds': self.scheduler.interval_seconds,
                'batch_size': self.scheduler.batch_size,
                'max_concurrent_requests': self.scheduler.max_concurrent_requests,
                'rate_limit_delay': self.scheduler.rate_limit_delay,
                'max_retries': self.scheduler.max_retries,
                'base_retry_delay': self.scheduler.base_retry_delay,
                'max_retry_delay': self.scheduler.max_retry_delay,
                'processing_timeout_minutes': self.scheduler.processing_timeout_minutes,
            },
            'storage': {
                'data_dir': str(self.storage.data_dir),
                'image_dir': str(self.storage.image_dir),
                'database_path': str(self.storage.database_path),
            },
            'performance': {
                'memory_threshold': self.performance.memory_threshold,
                'snapshot_retention_days': self.performance.snapshot_retention_days,
            },
        }
