"""Per-config schedule gate and in-flight guard."""

import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

from .errors import PersistenceError
from .models import MonitoringConfig, RunSummary, utcnow
from .pipeline import Pipeline
from .storage import Storage

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Drives runs per MonitoringConfig through Idle -> Running -> Idle.

    A run starts only when ``now >= next_execution`` (unless forced) and no
    other run for the same config is in flight. Whatever the outcome, the
    finished run sets ``last_executed = now`` and
    ``next_execution = now + frequency``.
    """

    def __init__(self, storage: Storage, pipeline: Pipeline,
                 clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.pipeline = pipeline
        self._clock = clock
        self._running = set()
        self._lock = threading.Lock()

    def is_running(self, config_id: str) -> bool:
        with self._lock:
            return config_id in self._running

    def _load(self, config_id: str) -> Optional[MonitoringConfig]:
        try:
            configs = self.storage.get_configs(config_id)
        except PersistenceError as e:
            logger.error(f"Cannot load config '{config_id}': {e}")
            return None
        if not configs:
            logger.warning(f"Unknown monitoring config: {config_id}")
            return None
        return configs[0]

    def _may_run(self, config: MonitoringConfig, now: datetime, force: bool) -> bool:
        if not config.is_active:
            logger.debug(f"Config '{config.id}' is inactive, skipping")
            return False
        if not force and not config.is_due(now):
            logger.debug(f"Config '{config.id}' not due until {config.next_execution.isoformat()}")
            return False
        return True

    def run_once(self, config_id: str, force: bool = False) -> Optional[RunSummary]:
        """
        Trigger one run for ``config_id``.

        Returns:
            The run summary, or None when the run was skipped (gate not
            open, config inactive or unknown, or a run already in flight)
        """
        config = self._load(config_id)
        if config is None or not self._may_run(config, self._clock(), force):
            return None

        with self._lock:
            if config_id in self._running:
                logger.info(f"Config '{config_id}' already running, trigger ignored")
                return None
            self._running.add(config_id)

        try:
            # A run that finished since the first read has moved next_execution on
            config = self._load(config_id)
            now = self._clock()
            if config is None or not self._may_run(config, now, force):
                return None
            return self._execute(config, now)
        finally:
            with self._lock:
                self._running.discard(config_id)

    def _execute(self, config: MonitoringConfig, now: datetime) -> RunSummary:
        try:
            return self.pipeline.run(config, now=now)
        except Exception as e:
            logger.exception(f"Run for '{config.id}' failed: {e}")
            return RunSummary(config_id=config.id, started_at=now,
                              finished_at=utcnow(), status="failed")
        finally:
            next_execution = now + config.frequency
            try:
                self.storage.update_config_execution(config.id, now, next_execution)
                logger.info(f"Next run for '{config.id}' at {next_execution.isoformat()}")
            except PersistenceError as e:
                logger.error(f"Could not advance schedule for '{config.id}': {e}")

    def tick(self, force: bool = False) -> List[RunSummary]:
        """Give every config a chance to run; returns summaries of runs that happened."""
        try:
            configs = self.storage.get_configs()
        except PersistenceError as e:
            logger.error(f"Cannot list monitoring configs: {e}")
            return []
        summaries = []
        for config in configs:
            summary = self.run_once(config.id, force=force)
            if summary is not None:
                summaries.append(summary)
        return summaries
