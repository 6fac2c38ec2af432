"""
app/config.py

Application-level configuration for the listing monitor.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from types import MappingProxyType
from typing import Mapping

from db.config import load_env_files

logger = logging.getLogger(__name__)

DEFAULT_NUMERIC_FIELDS: tuple[str, ...] = (
    "price",
    "asking_price",
    "revenue",
    "monthly_revenue",
    "profit",
    "monthly_profit",
    "multiple",
    "profit_multiple",
    "revenue_multiple",
    "age_months",
    "page_views_monthly",
    "bid_count",
)

DEFAULT_FIELD_WEIGHTS: Mapping[str, float] = MappingProxyType(
    {
        "price": 1.0,
        "asking_price": 1.0,
        "revenue": 0.8,
        "monthly_revenue": 0.8,
        "profit": 0.8,
        "monthly_profit": 0.8,
        "multiple": 0.6,
        "profit_multiple": 0.6,
        "revenue_multiple": 0.6,
        "status": 0.5,
        "category": 0.3,
        "url": 0.1,
        "title": 0.1,
        "description": 0.05,
    }
)

_SCHEDULE_INTERVALS = {"hourly", "daily", "twice-daily", "weekly", "custom"}


def _env(name: str) -> str | None:
    """
    Stripped value of an environment variable; blank counts as unset.

    `.env` files are read on first access.
    """

    _seed_env_files()
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


@lru_cache(maxsize=1)
def _seed_env_files() -> None:
    load_env_files()


def _get_bool_env(name: str, default: bool) -> bool:
    value = _env(name)
    return default if value is None else value.lower() in {"1", "true", "yes", "on"}


def _get_number_env(name: str, default: int | float, cast: type[int] | type[float]) -> int | float:
    value = _env(name)
    if value is None:
        return default
    try:
        return cast(value)
    except ValueError:
        logger.warning("%s=%r is not a valid %s; using %s", name, value, cast.__name__, default)
        return default


def _get_int_env(name: str, default: int) -> int:
    return _get_number_env(name, default, int)


def _get_float_env(name: str, default: float) -> float:
    return _get_number_env(name, default, float)


def _get_str_env(name: str, default: str) -> str:
    return _env(name) or default


def _get_optional_str_env(name: str) -> str | None:
    return _env(name)


def _get_csv_env(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """
    Read a comma-separated list, lower-cased and de-duplicated in order.
    """

    value = _env(name)
    if value is None:
        return default
    items: list[str] = []
    for token in value.split(","):
        item = token.strip().lower()
        if item and item not in items:
            items.append(item)
    return tuple(items) if items else default


def _get_weights_env(name: str, default: Mapping[str, float]) -> Mapping[str, float]:
    """
    Read a JSON object of field -> weight. Invalid payloads fall back to defaults.
    """

    raw_value = _env(name)
    if raw_value is None:
        return default
    try:
        parsed = json.loads(raw_value)
    except json.JSONDecodeError:
        logger.warning("%s is not valid JSON; using default field weights", name)
        return default
    if not isinstance(parsed, dict):
        logger.warning("%s must be a JSON object; using default field weights", name)
        return default

    weights = dict(default)
    for key, value in parsed.items():
        try:
            weights[str(key).strip().lower()] = max(0.0, float(value))
        except (TypeError, ValueError):
            logger.warning("%s: skipping non-numeric weight for %r", name, key)
    return MappingProxyType(weights)


@dataclass(frozen=True)
class QueueSettings:
    """
    Retry, visibility and rate-limit settings for the scan job queue.
    """

    max_attempts: int = 3
    backoff_base_seconds: float = 5.0
    backoff_cap_seconds: float = 300.0
    visibility_timeout_seconds: float = 120.0
    rate_limit_max_jobs: int = 20
    rate_limit_window_seconds: float = 60.0
    poll_interval_seconds: float = 1.0
    settled_retention_seconds: float = 86400.0


@dataclass(frozen=True)
class WorkerSettings:
    """
    Worker pool sizing and extraction behaviour.
    """

    concurrency: int = 3
    extraction_timeout_seconds: float = 30.0
    confidence_threshold: float = 0.5
    strategy_order: tuple[str, ...] = ("primary", "fallback", "stealth")
    expected_fields: tuple[str, ...] = ("title", "price", "category", "revenue", "profit", "url")
    supervise_interval_seconds: float = 5.0


@dataclass(frozen=True)
class DiffSettings:
    record_unchanged: bool = False
    conflict_retries: int = 3
    numeric_fields: tuple[str, ...] = DEFAULT_NUMERIC_FIELDS
    field_weights: Mapping[str, float] = field(default_factory=lambda: DEFAULT_FIELD_WEIGHTS)
    default_field_weight: float = 0.2
    max_relative_delta: float = 1.0


@dataclass(frozen=True)
class ScanSettings:
    failure_tolerance: float = 0.2
    deadline_seconds: float = 3600.0
    cancel_grace_seconds: float = 30.0
    default_pages: int = 5


@dataclass(frozen=True)
class SchedulerSettings:
    enabled: bool = False
    interval: str = "hourly"
    pages: int = 5


@dataclass(frozen=True)
class ExtractorSettings:
    """
    Strategy -> extractor type mapping and HTTP adapter settings.

    Types are either a registered built-in name or a ``module.path:ClassName``.
    """

    primary: str = "http_listing"
    fallback: str | None = None
    stealth: str | None = None
    site_config_path: str | None = None
    user_agent: str = "ListingMonitorBot/1.0 (+https://example.com/bot)"

    def strategy_types(self) -> dict[str, str]:
        mapping = {"primary": self.primary, "fallback": self.fallback, "stealth": self.stealth}
        return {strategy: kind for strategy, kind in mapping.items() if kind}


@dataclass(frozen=True)
class MonitorSettings:
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    diff: DiffSettings = field(default_factory=DiffSettings)
    scan: ScanSettings = field(default_factory=ScanSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    extractor: ExtractorSettings = field(default_factory=ExtractorSettings)
    log_level: str = "INFO"


def get_queue_settings() -> QueueSettings:
    return QueueSettings(
        max_attempts=max(1, _get_int_env("MONITOR_QUEUE_MAX_ATTEMPTS", 3)),
        backoff_base_seconds=max(0.0, _get_float_env("MONITOR_QUEUE_BACKOFF_BASE_SECONDS", 5.0)),
        backoff_cap_seconds=max(0.0, _get_float_env("MONITOR_QUEUE_BACKOFF_CAP_SECONDS", 300.0)),
        visibility_timeout_seconds=max(
            1.0,
            _get_float_env("MONITOR_QUEUE_VISIBILITY_TIMEOUT_SECONDS", 120.0),
        ),
        rate_limit_max_jobs=max(0, _get_int_env("MONITOR_RATE_LIMIT_MAX_JOBS", 20)),
        rate_limit_window_seconds=max(
            0.1,
            _get_float_env("MONITOR_RATE_LIMIT_WINDOW_SECONDS", 60.0),
        ),
        poll_interval_seconds=max(0.05, _get_float_env("MONITOR_QUEUE_POLL_INTERVAL_SECONDS", 1.0)),
        settled_retention_seconds=max(
            0.0,
            _get_float_env("MONITOR_QUEUE_SETTLED_RETENTION_SECONDS", 86400.0),
        ),
    )


def get_worker_settings() -> WorkerSettings:
    defaults = WorkerSettings()
    return WorkerSettings(
        concurrency=max(1, _get_int_env("MONITOR_WORKER_CONCURRENCY", 3)),
        extraction_timeout_seconds=max(
            1.0,
            _get_float_env("MONITOR_EXTRACTION_TIMEOUT_SECONDS", 30.0),
        ),
        confidence_threshold=min(
            1.0,
            max(0.0, _get_float_env("MONITOR_CONFIDENCE_THRESHOLD", 0.5)),
        ),
        strategy_order=_get_csv_env("MONITOR_STRATEGY_ORDER", defaults.strategy_order),
        expected_fields=_get_csv_env("MONITOR_EXPECTED_FIELDS", defaults.expected_fields),
        supervise_interval_seconds=max(
            0.1,
            _get_float_env("MONITOR_SUPERVISE_INTERVAL_SECONDS", 5.0),
        ),
    )


def get_diff_settings() -> DiffSettings:
    return DiffSettings(
        record_unchanged=_get_bool_env("MONITOR_RECORD_UNCHANGED", False),
        conflict_retries=max(0, _get_int_env("MONITOR_DIFF_CONFLICT_RETRIES", 3)),
        numeric_fields=_get_csv_env("MONITOR_NUMERIC_FIELDS", DEFAULT_NUMERIC_FIELDS),
        field_weights=_get_weights_env("MONITOR_FIELD_WEIGHTS", DEFAULT_FIELD_WEIGHTS),
        default_field_weight=max(0.0, _get_float_env("MONITOR_DEFAULT_FIELD_WEIGHT", 0.2)),
        max_relative_delta=max(0.0, _get_float_env("MONITOR_MAX_RELATIVE_DELTA", 1.0)),
    )


def get_scan_settings() -> ScanSettings:
    return ScanSettings(
        failure_tolerance=min(
            1.0,
            max(0.0, _get_float_env("MONITOR_SCAN_FAILURE_TOLERANCE", 0.2)),
        ),
        deadline_seconds=max(1.0, _get_float_env("MONITOR_SCAN_DEADLINE_SECONDS", 3600.0)),
        cancel_grace_seconds=max(0.0, _get_float_env("MONITOR_SCAN_CANCEL_GRACE_SECONDS", 30.0)),
        default_pages=max(1, _get_int_env("MONITOR_SCAN_DEFAULT_PAGES", 5)),
    )


def get_scheduler_settings() -> SchedulerSettings:
    interval = _get_str_env("MONITOR_SCHEDULE_INTERVAL", "hourly").lower()
    if interval not in _SCHEDULE_INTERVALS:
        logger.warning("MONITOR_SCHEDULE_INTERVAL=%r is not supported; using hourly", interval)
        interval = "hourly"
    return SchedulerSettings(
        enabled=_get_bool_env("MONITOR_SCHEDULE_ENABLED", False),
        interval=interval,
        pages=max(1, _get_int_env("MONITOR_SCHEDULE_PAGES", _get_int_env("MONITOR_SCAN_DEFAULT_PAGES", 5))),
    )


def get_extractor_settings() -> ExtractorSettings:
    return ExtractorSettings(
        primary=_get_str_env("MONITOR_EXTRACTOR_PRIMARY", "http_listing"),
        fallback=_get_optional_str_env("MONITOR_EXTRACTOR_FALLBACK"),
        stealth=_get_optional_str_env("MONITOR_EXTRACTOR_STEALTH"),
        site_config_path=_get_optional_str_env("MONITOR_SITE_CONFIG_PATH"),
        user_agent=_get_str_env(
            "MONITOR_USER_AGENT",
            "ListingMonitorBot/1.0 (+https://example.com/bot)",
        ),
    )


@lru_cache(maxsize=1)
def get_monitor_settings() -> MonitorSettings:
    """
    Return cached monitor settings from environment variables.
    """

    return MonitorSettings(
        queue=get_queue_settings(),
        worker=get_worker_settings(),
        diff=get_diff_settings(),
        scan=get_scan_settings(),
        scheduler=get_scheduler_settings(),
        extractor=get_extractor_settings(),
        log_level=_get_str_env("MONITOR_LOG_LEVEL", "INFO").upper(),
    )
