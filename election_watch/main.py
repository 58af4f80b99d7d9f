#!/usr/bin/env python3
"""Main entry point for the election monitor."""

import argparse
import logging
import os
import sys
import threading
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional
import yaml

from .alerts import AlertEngine
from .classifier import (
    DEFAULT_ENDPOINT,
    DEFAULT_MODEL,
    ChatClassifier,
    ClassificationCache,
    Classifier,
    HeuristicClassifier,
)
from .errors import ConfigError
from .fetcher import Fetcher
from .fetchers.http import DEFAULT_USER_AGENT
from .geo import GeoResolver
from .models import MonitoringConfig, PollingStation, RunSummary, utcnow
from .notify import AlertNotifier
from .pipeline import Pipeline
from .quota import QuotaGuard, guard_from_config
from .scheduler import Scheduler
from .sources import SourceRegistry
from .storage import Storage
from .taxonomy import ELECTION_KEYWORDS, EXCLUDE_KEYWORDS, PARISHES

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def load_config(config_path: str) -> dict:
    """Load configuration from YAML file."""
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_file, "r") as f:
        config = yaml.safe_load(f)

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError(f"Config file must contain a mapping: {config_path}")
    return config


def _secret(section: dict, key: str, env_names: List[str]) -> str:
    """Config value first, then the first environment variable that is set."""
    value = section.get(key) or ""
    if value:
        return value
    for name in env_names:
        if os.environ.get(name):
            return os.environ[name]
    return ""


def load_monitoring_configs(config: dict) -> List[MonitoringConfig]:
    """Policy records from the ``monitoring`` section, or one default policy."""
    defaults = {
        "keywords": ELECTION_KEYWORDS,
        "exclude_keywords": EXCLUDE_KEYWORDS,
        "geo_units": PARISHES,
    }
    entries = config.get("monitoring") or [{"id": "default"}]
    configs = []
    for entry in entries:
        try:
            configs.append(MonitoringConfig.from_dict(entry, defaults))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid monitoring entry {entry!r}: {e}") from e
    return configs


def build_guards(config: dict) -> Dict[str, QuotaGuard]:
    """Quota guards live for the whole process so windows span runs."""
    quota = config.get("quota", {})
    return {
        "fetch": guard_from_config("fetch", quota.get("fetch"), default_max_calls=200),
        "classifier": guard_from_config(
            "classifier", quota.get("classifier"), default_max_calls=100
        ),
    }


def build_cache(config: dict) -> ClassificationCache:
    settings = config.get("classifier", {})
    return ClassificationCache(
        ttl=float(settings.get("cache_ttl", 600)),
        max_entries=int(settings.get("cache_size", 1000)),
    )


def build_resolver(config: dict) -> GeoResolver:
    """Parishes and localities from the taxonomy, polling stations from config."""
    try:
        stations = [PollingStation.from_dict(s) for s in config.get("polling_stations") or []]
    except (KeyError, TypeError) as e:
        raise ConfigError(f"Invalid polling station entry: {e}") from e
    return GeoResolver(stations=stations)


def build_classifier(settings: dict, guard: QuotaGuard, resolver: GeoResolver,
                     cache: Optional[ClassificationCache] = None) -> Classifier:
    """External classifier when enabled and keyed, heuristic otherwise."""
    primary = None
    if settings.get("enabled", True):
        api_key = _secret(settings, "api_key", [settings.get("api_key_env", "XAI_API_KEY")])
        if api_key:
            primary = ChatClassifier(
                api_key=api_key,
                endpoint=settings.get("endpoint", DEFAULT_ENDPOINT),
                model=settings.get("model", DEFAULT_MODEL),
                timeout=float(settings.get("timeout", 30)),
                guard=guard,
            )
        else:
            logger.warning("No classifier API key configured, using heuristic classifier only")
    return Classifier(primary, HeuristicClassifier(resolver), cache=cache)


def build_scheduler(
    config: dict,
    guards: Dict[str, QuotaGuard],
    dry_run: bool = False,
    cancel_event: Optional[threading.Event] = None,
    cache: Optional[ClassificationCache] = None,
) -> Scheduler:
    """Assemble the pipeline from config and sync monitoring policies into storage."""
    app = config.get("app", {})
    fetch_workers = int(app.get("fetch_workers", 6))
    classify_workers = int(app.get("classify_workers", 2))
    if classify_workers >= fetch_workers:
        raise ConfigError(
            f"classify_workers ({classify_workers}) must be smaller than "
            f"fetch_workers ({fetch_workers})"
        )

    storage = Storage(app.get("db_path", "data/election_watch.sqlite"))
    for monitoring_config in load_monitoring_configs(config):
        storage.save_config(monitoring_config)

    search = config.get("search", {})
    fetcher = Fetcher(
        workers=fetch_workers,
        timeout=float(app.get("fetch_timeout", 10)),
        html_timeout=float(app.get("html_timeout", 15)),
        guard=guards["fetch"],
        credentials={
            "newsapi": _secret(search, "newsapi_key", ["NEWS_API_KEY", "NEWSAPI_KEY"]),
            "x": _secret(search, "x_bearer_token", ["X_BEARER_TOKEN", "TWITTER_BEARER_TOKEN"]),
        },
        user_agent=app.get("user_agent", DEFAULT_USER_AGENT),
    )
    resolver = build_resolver(config)
    pipeline = Pipeline(
        registry=SourceRegistry.from_config(config.get("sources")),
        fetcher=fetcher,
        classifier=build_classifier(
            config.get("classifier", {}), guards["classifier"], resolver,
            cache=cache if cache is not None else build_cache(config),
        ),
        storage=storage,
        alert_engine=AlertEngine.from_config(config.get("alerts")),
        resolver=resolver,
        notifier=AlertNotifier.from_config(config.get("ntfy"), dry_run=dry_run),
        classify_workers=classify_workers,
        cancel_event=cancel_event,
    )
    return Scheduler(storage, pipeline)


def run_once(
    config: dict,
    guards: Optional[Dict[str, QuotaGuard]] = None,
    config_id: Optional[str] = None,
    dry_run: bool = False,
    force: bool = False,
    cancel_event: Optional[threading.Event] = None,
    cache: Optional[ClassificationCache] = None,
) -> List[RunSummary]:
    """Run every due config once (or just ``config_id``)."""
    guards = guards or build_guards(config)
    scheduler = build_scheduler(
        config, guards, dry_run=dry_run, cancel_event=cancel_event, cache=cache
    )
    if config_id:
        summary = scheduler.run_once(config_id, force=force)
        summaries = [summary] if summary else []
    else:
        summaries = scheduler.tick(force=force)
    if not summaries:
        logger.info("No monitoring config was due")
    for guard in guards.values():
        logger.info(f"Usage: {guard.usage()}")
    return summaries


def print_sentiment_summary(config: dict, hours: float = 24):
    """Log average sentiment per parish (and per polling station) for the last ``hours``."""
    storage = Storage(config.get("app", {}).get("db_path", "data/election_watch.sqlite"))
    since = utcnow() - timedelta(hours=hours)
    rows = storage.geo_sentiment_summary(since)
    logger.info(f"Parish sentiment, last {hours:g}h:")
    if not rows:
        logger.info("  no classified items")
    for row in rows:
        logger.info(
            f"  {row['geo_unit']:<15} items={row['items']:<4} "
            f"average={row['average_sentiment']:+.2f}"
        )

    stations = storage.geo_sentiment_summary(since, by="polling_station")
    if stations:
        logger.info(f"Polling station sentiment, last {hours:g}h:")
    for row in stations:
        logger.info(
            f"  {row['polling_station']:<15} items={row['items']:<4} "
            f"average={row['average_sentiment']:+.2f}"
        )


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Election content monitor with sentiment analysis and alerts"
    )
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to config YAML file (default: config.yaml)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one cycle and exit",
    )
    parser.add_argument(
        "--config-id",
        help="Only run this monitoring config",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Ignore the schedule gate (manual trigger)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log alerts instead of pushing them to ntfy",
    )
    parser.add_argument(
        "--summary",
        action="store_true",
        help="Print parish and polling station sentiment summary and exit",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-file",
        help="Path to log file (default: logs/election-watch.log)",
    )

    args = parser.parse_args()

    log_file = args.log_file or "logs/election-watch.log"
    setup_logging(verbose=args.verbose, log_file=log_file)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ConfigError) as e:
        logging.error(f"Configuration error: {e}")
        sys.exit(1)
    except Exception as e:
        logging.error(f"Error loading config: {e}")
        sys.exit(1)

    if args.summary:
        print_sentiment_summary(config)
        return

    cancel_event = threading.Event()
    guards = build_guards(config)
    # Shared across config reloads, like the quota guards
    cache = build_cache(config)
    tick_seconds = float(config.get("app", {}).get("tick_seconds", 60))
    force = args.force

    try:
        while True:
            run_once(
                config,
                guards=guards,
                config_id=args.config_id,
                dry_run=args.dry_run,
                force=force,
                cancel_event=cancel_event,
                cache=cache,
            )
            if args.once or cancel_event.wait(tick_seconds):
                break
            force = False
            # Pick up config edits on the next run
            config = load_config(args.config)
    except KeyboardInterrupt:
        cancel_event.set()
        logging.info("Interrupted by user")
        sys.exit(0)
    except ConfigError as e:
        logging.error(f"Configuration error: {e}")
        sys.exit(1)
    except Exception as e:
        logging.exception(f"Error during execution: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
