from __future__ import annotations

import argparse
import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Optional

from pricewatch.config import DEFAULT_SOURCES_PATH, CrawlerSettings, RedisSettings, load_sources
from pricewatch.errors import ConfigError
from pricewatch.logging_config import get_logger, setup_logging
from pricewatch.manager import CrawlerManager

logger = get_logger("main")


def _format_states(manager: CrawlerManager) -> str:
    parts = []
    for state in manager.get_all_states():
        parts.append(f"{state.key}={state.status}({state.total_records})")
    return " ".join(parts)


def run(
    sources_path: Path,
    status_interval: float,
    use_redis: bool,
    stop_event: Optional[threading.Event] = None,
) -> None:
    settings = CrawlerSettings.from_env()
    redis_settings = RedisSettings.from_env()
    if not use_redis:
        redis_settings = replace(redis_settings, disabled=True)

    sources = load_sources(sources_path)
    manager = CrawlerManager(settings, sources, redis_settings=redis_settings)

    stop_event = stop_event or threading.Event()
    manager.start_all()
    try:
        while not stop_event.wait(status_interval):
            logger.info(
                f"active={manager.scheduler.active_count}/{manager.scheduler.limit} "
                f"queued={manager.scheduler.pending_count} {_format_states(manager)}"
            )
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        manager.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Continuously crawl configured price tables")
    parser.add_argument("--sources", default=str(DEFAULT_SOURCES_PATH), help="Path to sources JSON config")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...)")
    parser.add_argument("--log-file", default=None, help="Optional log file path")
    parser.add_argument("--status-interval", type=float, default=15.0, help="Seconds between status log lines")
    parser.add_argument("--no-redis", action="store_true", help="Store to JSON files only")

    args = parser.parse_args()

    setup_logging(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        log_file=Path(args.log_file) if args.log_file else None,
    )

    try:
        run(
            sources_path=Path(args.sources),
            status_interval=args.status_interval,
            use_redis=not args.no_redis,
        )
    except ConfigError as exc:
        logger.error(f"Configuration error: {exc}")
        raise SystemExit(2) from exc


if __name__ == "__main__":
    main()
