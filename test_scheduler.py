#!/usr/bin/env python3
"""Tests for the schedule gate, in-flight guard and schedule advancement."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from election_watch.errors import PersistenceError
from election_watch.models import MonitoringConfig, RunSummary
from election_watch.scheduler import Scheduler
from election_watch.storage import Storage

START = datetime(2025, 9, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now


def summary_for(config, now=None, status="ok"):
    return RunSummary(config_id=config.id, started_at=now or START, status=status)


@pytest.fixture
def storage(tmp_path):
    store = Storage(str(tmp_path / "schedule.sqlite"))
    store.save_config(MonitoringConfig(
        id="national", keywords=["JLP"], exclude_keywords=[], geo_units=[],
        frequency_minutes=30,
    ))
    return store


def make_scheduler(storage, clock=None, side_effect=None):
    pipeline = Mock()
    pipeline.run.side_effect = side_effect or summary_for
    return Scheduler(storage, pipeline, clock=clock or FakeClock()), pipeline


class TestGate:
    """Idle -> Running only when due."""

    def test_first_run_then_skip_until_due(self, storage):
        clock = FakeClock()
        scheduler, pipeline = make_scheduler(storage, clock)

        assert scheduler.run_once("national") is not None
        assert scheduler.run_once("national") is None

        clock.now = START + timedelta(minutes=29)
        assert scheduler.run_once("national") is None

        clock.now = START + timedelta(minutes=30)
        assert scheduler.run_once("national") is not None
        assert pipeline.run.call_count == 2

    def test_skip_has_no_side_effects(self, storage):
        scheduler, _ = make_scheduler(storage)
        scheduler.run_once("national")
        before = storage.get_configs("national")[0]
        scheduler.run_once("national")
        after = storage.get_configs("national")[0]
        assert (before.last_executed, before.next_execution) == (after.last_executed, after.next_execution)

    def test_force_bypasses_gate(self, storage):
        scheduler, pipeline = make_scheduler(storage)
        scheduler.run_once("national")
        assert scheduler.run_once("national", force=True) is not None
        assert pipeline.run.call_count == 2

    def test_inactive_and_unknown(self, storage):
        storage.save_config(MonitoringConfig(
            id="paused", keywords=[], exclude_keywords=[], geo_units=[], is_active=False,
        ))
        scheduler, pipeline = make_scheduler(storage)
        assert scheduler.run_once("paused") is None
        assert scheduler.run_once("missing") is None
        pipeline.run.assert_not_called()


class TestAdvance:
    """Schedule moves forward after every run."""

    @pytest.mark.parametrize("status", ["ok", "partial", "failed"])
    def test_monotonic(self, storage, status):
        scheduler, _ = make_scheduler(
            storage, side_effect=lambda config, now=None: summary_for(config, now, status)
        )
        summary = scheduler.run_once("national")
        config = storage.get_configs("national")[0]

        assert summary.status == status
        assert config.last_executed == START
        assert config.next_execution > config.last_executed
        assert config.next_execution - config.last_executed == timedelta(minutes=30)

    def test_crashing_pipeline_still_advances(self, storage):
        scheduler, _ = make_scheduler(storage, side_effect=RuntimeError("boom"))
        summary = scheduler.run_once("national")

        assert summary.status == "failed"
        assert storage.get_configs("national")[0].next_execution == START + timedelta(minutes=30)
        assert not scheduler.is_running("national")

    def test_schedule_write_failure_is_logged(self, storage):
        scheduler, _ = make_scheduler(storage)
        with patch.object(storage, "update_config_execution", side_effect=PersistenceError("locked")):
            summary = scheduler.run_once("national")
        assert summary is not None
        assert not scheduler.is_running("national")


class TestInFlight:
    """A second trigger while running is a no-op."""

    def test_reentrant_trigger_ignored(self, storage):
        nested = []

        def run(config, now=None):
            assert scheduler.is_running("national")
            nested.append(scheduler.run_once("national", force=True))
            return summary_for(config, now)

        scheduler, pipeline = make_scheduler(storage, side_effect=run)
        assert scheduler.run_once("national") is not None
        assert nested == [None]
        assert pipeline.run.call_count == 1

    def test_stale_read_rechecked_after_claiming(self, storage):
        scheduler, pipeline = make_scheduler(storage)
        stale = storage.get_configs("national")
        scheduler.run_once("national")

        # First read sees the schedule as it was before the run above finished
        fresh = storage.get_configs
        reads = iter([stale])
        with patch.object(storage, "get_configs",
                          side_effect=lambda config_id=None: next(reads, None) or fresh(config_id)):
            assert scheduler.run_once("national") is None

        assert pipeline.run.call_count == 1
        assert not scheduler.is_running("national")


class TestTick:
    """Every config gets a turn."""

    def test_tick_runs_due_configs(self, storage):
        storage.save_config(MonitoringConfig(
            id="kingston", keywords=["PNP"], exclude_keywords=[], geo_units=["Kingston"],
        ))
        scheduler, _ = make_scheduler(storage)
        summaries = scheduler.tick()
        assert sorted(s.config_id for s in summaries) == ["kingston", "national"]
        assert scheduler.tick() == []