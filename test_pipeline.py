#!/usr/bin/env python3
"""End-to-end tests of a monitoring run with fetching stubbed out."""

import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from election_watch.alerts import AlertEngine
from election_watch.classifier import Classifier, HeuristicClassifier
from election_watch.dedup import fingerprint
from election_watch.errors import ClassifierError, PersistenceError
from election_watch.geo import GeoResolver
from election_watch.models import (
    Engagement,
    MonitoringConfig,
    PollingStation,
    RawItem,
    SentimentAnalysis,
    Source,
    SourceError,
)
from election_watch.pipeline import Pipeline, cap_items
from election_watch.sources import SourceRegistry
from election_watch.storage import Storage
from election_watch.taxonomy import ELECTION_KEYWORDS, EXCLUDE_KEYWORDS, PARISHES

NOW = datetime(2025, 9, 1, 12, 0, tzinfo=timezone.utc)

HOLNESS = "Andrew Holness announces new JLP policy for St. Andrew"


def make_config(**overrides):
    values = dict(
        id="national",
        keywords=list(ELECTION_KEYWORDS),
        exclude_keywords=list(EXCLUDE_KEYWORDS),
        geo_units=list(PARISHES),
        relevance_floor=5.0,
        analysis_floor=6.0,
    )
    values.update(overrides)
    return MonitoringConfig(**values)


def make_registry(topic_weight=8):
    return SourceRegistry([
        Source("a", "Source A", "rss", "https://a.example.com/feed", priority=5,
               topic_weight=topic_weight),
        Source("b", "Source B", "rss", "https://b.example.com/feed", priority=4,
               topic_weight=topic_weight),
    ])


def raw(title, body="", source_id="a", url=None, published_at=NOW, engagement=None):
    return RawItem(
        source_id=source_id,
        title=title,
        body=body,
        url=url or f"https://{source_id}.example.com/{abs(hash(title))}",
        published_at=published_at,
        fetched_at=NOW,
        engagement=engagement,
    )


def primary_returning(threat="low"):
    primary = Mock()
    primary.classify.side_effect = lambda text, context=None: SentimentAnalysis(
        sentiment="positive", score=0.3, confidence=0.9, threat_level=threat,
        topics=["policy"], model="grok-beta",
    )
    return primary


def make_pipeline(storage, items, errors=None, primary=None, fallback=None,
                  registry=None, notifier=None, cancel_event=None, resolver=None):
    fetcher = Mock()
    fetcher.fetch_all.return_value = (items, errors or [])
    classifier = Classifier(primary, fallback or HeuristicClassifier())
    return Pipeline(
        registry=registry or make_registry(),
        fetcher=fetcher,
        classifier=classifier,
        storage=storage,
        alert_engine=AlertEngine(),
        resolver=resolver,
        notifier=notifier,
        classify_workers=2,
        cancel_event=cancel_event,
    )


class FlakyStorage(Storage):
    """Fails the first item write only."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.upserts = 0

    def upsert_item(self, item):
        self.upserts += 1
        if self.upserts == 1:
            raise PersistenceError("database is locked")
        return super().upsert_item(item)


@pytest.fixture
def storage(tmp_path):
    return Storage(str(tmp_path / "pipeline.sqlite"))


class TestScenarios:
    """Behaviour of whole runs."""

    def test_relevant_item_is_classified_and_located(self, storage):
        primary = primary_returning()
        pipeline = make_pipeline(storage, [raw(HOLNESS)], primary=primary)

        summary = pipeline.run(make_config(), now=NOW)

        assert summary.stored == 1
        assert summary.classified == 1
        assert summary.fallback == 0
        primary.classify.assert_called_once()
        item = storage.get_recent_items()[0]
        assert item.geo_unit == "St. Andrew"
        assert item.relevance_score >= 6
        assert item.sentiment == "positive"
        assert storage.get_analysis(item.id).model == "grok-beta"

    def test_excluded_item_touches_nothing_downstream(self, storage):
        primary = primary_returning()
        pipeline = make_pipeline(storage, [raw("KFC offering free chicken buckets")], primary=primary)

        summary = pipeline.run(make_config(), now=NOW)

        assert summary.excluded == 1
        assert summary.stored == 0
        primary.classify.assert_not_called()
        assert storage.get_item_count() == 0

    def test_identical_items_from_two_sources(self, storage):
        items = [
            raw(HOLNESS, "Details inside.", source_id="a"),
            raw(HOLNESS, "Details inside.", source_id="b"),
        ]
        primary = primary_returning()
        summary = make_pipeline(storage, items, primary=primary).run(make_config(), now=NOW)

        assert summary.stored == 1
        assert summary.duplicates == 1
        assert storage.get_item_count() == 1
        assert storage.get_analysis_count() == 1
        assert primary.classify.call_count == 1
        stored = storage.get_recent_items()[0]
        assert stored.source == "a"
        assert storage.occurrence_count(stored.fingerprint) == 1

    def test_excluded_duplicates_leave_no_trace(self, storage):
        title = "KFC offering free chicken buckets"
        items = [raw(title, source_id="a"), raw(title, source_id="b")]
        primary = primary_returning()

        summary = make_pipeline(storage, items, primary=primary).run(make_config(), now=NOW)

        assert summary.excluded == 1
        assert summary.duplicates == 1
        assert storage.occurrence_count(fingerprint(title, "")) == 0
        assert storage.get_item_count() == 0
        primary.classify.assert_not_called()

    def test_duplicate_engagement_counts_toward_viral(self, storage):
        items = [
            raw(HOLNESS, source_id="a", engagement=Engagement(likes=600)),
            raw(HOLNESS, source_id="b", engagement=Engagement(likes=600)),
        ]
        summary = make_pipeline(storage, items, primary=primary_returning()).run(make_config(), now=NOW)

        assert summary.duplicates == 1
        assert summary.alerts == 1
        alert = storage.get_alerts()[0]
        assert alert.type == "viral_content"
        assert "1200 total engagements" in alert.description

    def test_polling_station_recorded(self, storage):
        resolver = GeoResolver(stations=[
            PollingStation(code="KIN-001", name="Kingston College", parish="Kingston"),
        ])
        text = "JLP candidate visits Kingston College polling station"
        pipeline = make_pipeline(storage, [raw(text)], resolver=resolver)

        summary = pipeline.run(make_config(), now=NOW)

        assert summary.stored == 1
        item = storage.get_recent_items()[0]
        assert (item.geo_unit, item.polling_station) == ("Kingston", "KIN-001")

    def test_second_run_is_idempotent(self, storage):
        items = [raw(HOLNESS), raw("PNP candidate campaigns in Clarendon")]
        make_pipeline(storage, items).run(make_config(), now=NOW)
        first = {i.fingerprint for i in storage.get_recent_items()}

        primary = primary_returning()
        summary = make_pipeline(storage, items, primary=primary).run(make_config(), now=NOW)

        assert {i.fingerprint for i in storage.get_recent_items()} == first
        assert summary.stored == 0
        assert summary.duplicates == 2
        assert storage.get_analysis_count() == 2
        primary.classify.assert_not_called()

    def test_between_floors_stored_without_analysis(self, storage):
        primary = primary_returning()
        registry = make_registry(topic_weight=2)
        # PNP (2) + Clarendon (3) + minister (1) + 0.5 * 2 = 7
        pipeline = make_pipeline(storage, [raw("PNP minister visits Clarendon")],
                                 primary=primary, registry=registry)

        summary = pipeline.run(make_config(relevance_floor=5, analysis_floor=9), now=NOW)

        assert summary.stored == 1
        assert summary.classified == 0
        primary.classify.assert_not_called()
        item = storage.get_recent_items()[0]
        assert item.relevance_score == pytest.approx(7.0)
        assert item.sentiment is None
        assert storage.get_analysis(item.id) is None

    def test_rate_limit_degrades_to_heuristic(self, storage):
        from election_watch.errors import ClassifierRateLimited

        primary = Mock()
        primary.classify.side_effect = ClassifierRateLimited("429")
        items = [raw(HOLNESS), raw("PNP candidate campaigns in Clarendon")]
        pipeline = make_pipeline(storage, items, primary=primary)
        pipeline.classify_workers = 1

        summary = pipeline.run(make_config(), now=NOW)

        assert summary.classified == 2
        assert summary.fallback == 2
        assert primary.classify.call_count == 1

    def test_classifier_total_failure_keeps_item(self, storage):
        primary = Mock()
        primary.classify.side_effect = ClassifierError("down")
        fallback = Mock()
        fallback.classify.side_effect = RuntimeError("broken")
        pipeline = make_pipeline(storage, [raw(HOLNESS)], primary=primary, fallback=fallback)

        summary = pipeline.run(make_config(), now=NOW)

        assert summary.stored == 1
        assert summary.unclassified == 1
        assert summary.alerts == 0
        assert storage.get_analysis_count() == 0

    def test_threat_alert_raised_and_pushed(self, storage):
        notifier = Mock(return_value=True)
        text = "Violence and intimidation reported at Kingston polling station"
        pipeline = make_pipeline(storage, [raw(text)], notifier=notifier)

        summary = pipeline.run(make_config(), now=NOW)

        assert summary.alerts == 1
        alert = storage.get_alerts()[0]
        assert alert.type == "threat_detected"
        assert alert.severity == "high"
        assert alert.geo_unit == "Kingston"
        notifier.assert_called_once()


class TestFailures:
    """Partial failure, persistence failure and cancellation."""

    def test_source_errors_make_run_partial(self, storage):
        errors = [SourceError("b", "SourceFetchError", "HTTP 500")]
        summary = make_pipeline(storage, [raw(HOLNESS)], errors=errors).run(make_config(), now=NOW)

        assert summary.status == "partial"
        assert summary.stored == 1
        assert summary.as_dict()["errors"][0]["source_id"] == "b"

    def test_unreachable_repository_marks_run_failed(self):
        storage = Mock()
        storage.is_seen.side_effect = PersistenceError("disk gone")
        summary = make_pipeline(storage, [raw(HOLNESS)]).run(make_config(), now=NOW)

        assert summary.status == "failed"
        assert summary.failed == 1
        storage.upsert_item.assert_not_called()

    def test_one_failed_store_does_not_stop_run(self, tmp_path):
        storage = FlakyStorage(str(tmp_path / "flaky.sqlite"))
        items = [raw(HOLNESS), raw("PNP candidate campaigns in Clarendon")]

        summary = make_pipeline(storage, items).run(make_config(), now=NOW)

        assert storage.upserts == 2
        assert summary.stored == 1
        assert summary.failed == 1
        assert summary.status == "partial"
        assert [i.title for i in storage.get_recent_items()] == ["PNP candidate campaigns in Clarendon"]

    def test_window_read_failure_keeps_threat_alert(self, storage):
        text = "Violence and intimidation reported at Kingston polling station"
        pipeline = make_pipeline(storage, [raw(text)])
        with patch.object(storage, "get_recent_items", side_effect=PersistenceError("read timeout")):
            summary = pipeline.run(make_config(), now=NOW)

        assert summary.alerts == 1
        assert storage.get_alerts()[0].type == "threat_detected"

    def test_cancelled_run_stores_nothing(self, storage):
        cancel = threading.Event()
        cancel.set()
        summary = make_pipeline(storage, [raw(HOLNESS)], cancel_event=cancel).run(
            make_config(), now=NOW
        )
        assert summary.status == "cancelled"
        assert storage.get_item_count() == 0


class TestCap:
    """Per-run item cap."""

    def test_priority_then_recency(self):
        older = raw("older a", source_id="a", published_at=datetime(2025, 8, 1, tzinfo=timezone.utc))
        newer = raw("newer a", source_id="a")
        other = raw("b item", source_id="b")
        capped = cap_items([other, older, newer], make_registry(), limit=2)
        assert [i.title for i in capped] == ["newer a", "older a"]

    def test_cap_applied_in_run(self, storage):
        items = [raw("PNP candidate campaigns in Clarendon", source_id="b"), raw(HOLNESS, source_id="a")]
        summary = make_pipeline(storage, items).run(make_config(max_items_per_run=1), now=NOW)
        assert summary.fetched == 2
        assert summary.processed == 1
        assert storage.get_recent_items()[0].source == "a"
