from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigError

DEFAULT_ROW_SELECTOR = ".datatable-v2_row__hkEus"
DEFAULT_SOURCES_PATH = Path("config/sources.json")


def _env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def _env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None


def _env_flag(environ: Mapping[str, str], key: str) -> bool:
    return environ.get(key, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class CrawlerSettings:
    """Tunables for crawl cycles, the scheduler and the record store.

    Durations are stored in seconds; the environment variables carry
    milliseconds."""

    max_retries: int = 3
    retry_delay_base: float = 5.0
    primary_timeout: float = 30.0
    fallback_timeout: float = 45.0
    fallback_wait_selector: Optional[str] = None
    no_data_backoff: float = 300.0
    max_concurrent: int = 2
    max_records: int = 99
    adaptive_switch_threshold: int = 3
    primary_reprobe_cycles: int = 10
    default_poll_interval: float = 30.0
    qps: float = 2.0
    browserless_url: str = "http://localhost:3000"
    browserless_token: Optional[str] = None
    data_dir: Path = Path("data")
    store_raw_trace: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CrawlerSettings":
        env = os.environ if environ is None else environ
        return cls(
            max_retries=_env_int(env, "CRAWLER_MAX_RETRIES", 3),
            retry_delay_base=_env_int(env, "CRAWLER_RETRY_DELAY_BASE_MS", 5000) / 1000.0,
            primary_timeout=_env_int(env, "PRIMARY_TIMEOUT_MS", 30000) / 1000.0,
            fallback_timeout=_env_int(env, "FALLBACK_TIMEOUT_MS", 45000) / 1000.0,
            fallback_wait_selector=env.get("FALLBACK_WAIT_SELECTOR") or None,
            no_data_backoff=_env_int(env, "NO_DATA_BACKOFF_MS", 300000) / 1000.0,
            max_concurrent=max(1, _env_int(env, "MAX_CONCURRENT_CRAWLERS", 2)),
            max_records=max(1, _env_int(env, "MAX_RECORDS", 99)),
            adaptive_switch_threshold=max(1, _env_int(env, "ADAPTIVE_SWITCH_THRESHOLD", 3)),
            primary_reprobe_cycles=max(0, _env_int(env, "PRIMARY_REPROBE_CYCLES", 10)),
            default_poll_interval=_env_int(env, "DEFAULT_POLL_INTERVAL_MS", 30000) / 1000.0,
            qps=_env_float(env, "CRAWLER_QPS", 2.0),
            browserless_url=env.get("BROWSERLESS_URL", "http://localhost:3000").rstrip("/"),
            browserless_token=env.get("BROWSERLESS_TOKEN") or None,
            data_dir=Path(env.get("DATA_DIR", "data")),
            store_raw_trace=env.get("STORE_RAW_TRACE") == "1",
        )


@dataclass(frozen=True)
class RedisSettings:
    host: str = "localhost"
    port: int = 6379
    password: Optional[str] = None
    db: int = 0
    key_prefix: str = "pricecrawl:"
    channel_prefix: str = "price-updates:"
    socket_timeout: float = 5.0
    health_check_interval: float = 30.0
    disabled: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RedisSettings":
        env = os.environ if environ is None else environ
        return cls(
            host=env.get("REDIS_HOST", "localhost"),
            port=_env_int(env, "REDIS_PORT", 6379),
            password=env.get("REDIS_PASSWORD") or None,
            db=_env_int(env, "REDIS_DB", 0),
            key_prefix=env.get("REDIS_KEY_PREFIX", "pricecrawl:"),
            health_check_interval=_env_int(env, "REDIS_HEALTH_CHECK_INTERVAL_MS", 30000) / 1000.0,
            disabled=_env_flag(env, "REDIS_DISABLED"),
        )


def validate_sources(data: Any) -> Dict[str, Dict[str, Any]]:
    """Check the shape of a parsed sources mapping and return it.

    Expected: ``{category: {"baseUrl": str, "regions": [str, ...],
    "pollIntervalMs": int, "rowSelector": str (optional)}}``.
    """
    if not isinstance(data, dict):
        raise ConfigError("sources config must be a JSON object keyed by category")

    for category, entry in data.items():
        if not isinstance(entry, dict):
            raise ConfigError(f"source {category!r} must be an object")
        base_url = entry.get("baseUrl")
        if not isinstance(base_url, str) or not base_url:
            raise ConfigError(f"source {category!r} is missing baseUrl")
        regions = entry.get("regions")
        if not isinstance(regions, list) or not all(isinstance(r, str) and r for r in regions):
            raise ConfigError(f"source {category!r} regions must be a list of non-empty strings")
        interval = entry.get("pollIntervalMs")
        if interval is not None and (not isinstance(interval, (int, float)) or interval <= 0):
            raise ConfigError(f"source {category!r} pollIntervalMs must be a positive number")
        selector = entry.get("rowSelector")
        if selector is not None and not isinstance(selector, str):
            raise ConfigError(f"source {category!r} rowSelector must be a string")
    return data


def load_sources(path: Optional[Path] = None) -> Dict[str, Dict[str, Any]]:
    """Load and validate the JSON sources file."""
    path = Path(path) if path else DEFAULT_SOURCES_PATH
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"sources config not found: {path}") from None
    except json.JSONDecodeError as exc:
        raise ConfigError(f"sources config {path} is not valid JSON: {exc}") from exc
    return validate_sources(data)
