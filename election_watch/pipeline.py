"""One monitoring run: fetch, filter, classify, store and alert."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Tuple

from .alerts import AlertEngine
from .classifier import Classifier
from .dedup import Candidate, dedupe
from .errors import PersistenceError
from .fetcher import Fetcher
from .geo import GeoResolver
from .models import (
    Alert,
    MonitoringConfig,
    ProcessedItem,
    RawItem,
    RunSummary,
    SentimentAnalysis,
    utcnow,
)
from .normalize import normalize
from .scoring import RelevanceResult, priority_score, recency_score, score, should_analyse
from .sources import SourceRegistry
from .storage import Storage

logger = logging.getLogger(__name__)


def cap_items(items: List[RawItem], registry: SourceRegistry, limit: int) -> List[RawItem]:
    """Keep at most ``limit`` items, by source priority then newest first."""
    if len(items) <= limit:
        return items

    def _key(item: RawItem):
        source = registry.get(item.source_id)
        priority = source.priority if source else 0
        return (-priority, -item.published_at.timestamp())

    return sorted(items, key=_key)[:limit]


class Pipeline:
    """Wires the pipeline stages together for a single run."""

    def __init__(
        self,
        registry: SourceRegistry,
        fetcher: Fetcher,
        classifier: Classifier,
        storage: Storage,
        alert_engine: AlertEngine,
        resolver: Optional[GeoResolver] = None,
        notifier: Optional[Callable[[Alert], bool]] = None,
        classify_workers: int = 2,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.registry = registry
        self.fetcher = fetcher
        self.classifier = classifier
        self.storage = storage
        self.alert_engine = alert_engine
        self.resolver = resolver or GeoResolver()
        self.notifier = notifier
        self.classify_workers = classify_workers
        self.cancel_event = cancel_event or threading.Event()

    def _cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def run(self, config: MonitoringConfig, now=None) -> RunSummary:
        """Run the pipeline once for ``config``. Never raises for item or source failures."""
        now = now or utcnow()
        summary = RunSummary(config_id=config.id, started_at=now)
        self.classifier.start_run()

        logger.info("=" * 60)
        logger.info(f"Starting monitoring run for config '{config.id}'")
        logger.info("=" * 60)

        sources = self.registry.active()
        raw_items, errors = self.fetcher.fetch_all(sources, config.keywords, self.cancel_event)
        summary.errors.extend(errors)

        if self._cancelled():
            summary.status = "cancelled"
            return self._finish(summary)

        kinds = {s.id: s for s in sources}
        normalized = []
        for raw in raw_items:
            source = kinds.get(raw.source_id)
            item = normalize(raw, source.kind, source.endpoint) if source else raw
            if item.title:
                normalized.append(item)
        summary.fetched = len(normalized)

        capped = cap_items(normalized, self.registry, config.max_items_per_run)
        summary.processed = len(capped)

        persistence = {"attempts": 0, "failures": 0}
        eligible = self._filter(dedupe(capped), config, summary, persistence)

        analyses = {}
        if not self._cancelled():
            analyses = self._classify(eligible, config)

        fresh = self._store(eligible, analyses, config, summary, persistence, now)

        if fresh and not self._cancelled():
            self._raise_alerts(fresh, summary, persistence, now)

        if persistence["attempts"] and persistence["failures"] == persistence["attempts"]:
            summary.status = "failed"
        elif self._cancelled():
            summary.status = "cancelled"
        elif summary.errors or summary.failed:
            summary.status = "partial"
        return self._finish(summary)

    def _filter(self, candidates: List[Candidate], config: MonitoringConfig,
                summary: RunSummary, persistence: dict) -> List[Tuple[Candidate, RelevanceResult]]:
        """Drop duplicates, exclusions, low scores and already-stored items."""
        eligible = []
        # Fingerprints whose canonical copy passed scoring and lookup
        retained = set()
        for candidate in candidates:
            item = candidate.item
            if candidate.is_duplicate:
                summary.duplicates += 1
                if candidate.fingerprint in retained:
                    self._record_occurrence(candidate, summary, persistence)
                continue

            source = self.registry.get(item.source_id)
            result = score(item, config, source.topic_weight if source else 1, self.resolver)
            if result.rejected:
                summary.excluded += 1
                logger.debug(f"Rejected '{item.title[:50]}': {result.rejected_reason}")
                continue
            summary.retained += 1

            persistence["attempts"] += 1
            try:
                seen = self.storage.is_seen(candidate.fingerprint, item.external_id)
            except PersistenceError as e:
                persistence["failures"] += 1
                summary.failed += 1
                logger.error(f"Lookup failed for '{item.title[:50]}': {e}")
                continue
            retained.add(candidate.fingerprint)
            if seen:
                summary.duplicates += 1
                logger.debug(f"Skipping already stored: {item.title[:50]}...")
                self._record_occurrence(candidate, summary, persistence)
                continue
            eligible.append((candidate, result))
        return eligible

    def _record_occurrence(self, candidate: Candidate, summary: RunSummary, persistence: dict):
        persistence["attempts"] += 1
        try:
            self.storage.record_occurrence(
                candidate.fingerprint, candidate.item.source_id, candidate.item.url,
                candidate.item.engagement,
            )
        except PersistenceError as e:
            persistence["failures"] += 1
            summary.failed += 1
            logger.error(f"Could not record occurrence: {e}")

    def _classify(self, eligible: List[Tuple[Candidate, RelevanceResult]],
                  config: MonitoringConfig) -> Dict[str, Optional[SentimentAnalysis]]:
        """Classify items above the analysis floor on a small worker pool."""
        jobs = [(c, r) for c, r in eligible if should_analyse(r, config)]
        results: Dict[str, Optional[SentimentAnalysis]] = {}
        if not jobs:
            return results

        with ThreadPoolExecutor(max_workers=self.classify_workers) as executor:
            futures = {}
            for candidate, result in jobs:
                source = self.registry.get(candidate.item.source_id)
                context = {
                    "Source": source.name if source else candidate.item.source_id,
                    "Matched keywords": ", ".join(result.matched_keywords),
                }
                future = executor.submit(
                    self.classifier.classify, candidate.item.text, context, candidate.fingerprint
                )
                futures[future] = candidate.fingerprint
            for future in as_completed(futures):
                fingerprint = futures[future]
                try:
                    results[fingerprint] = future.result()
                except Exception as e:
                    logger.error(f"Classification crashed for {fingerprint}: {e}")
                    results[fingerprint] = None
        return results

    def _store(self, eligible, analyses, config, summary, persistence,
               now) -> List[Tuple[ProcessedItem, SentimentAnalysis]]:
        """Persist retained items and their analyses, in scan order."""
        fresh = []
        for candidate, result in eligible:
            if self._cancelled():
                logger.info("Run cancelled, remaining items not stored")
                break
            raw = candidate.item
            geo = self.resolver.resolve(raw.text)
            item = ProcessedItem(
                fingerprint=candidate.fingerprint,
                title=raw.title,
                body=raw.body,
                url=raw.url,
                source=raw.source_id,
                published_at=raw.published_at,
                relevance_score=result.score,
                matched_keywords=result.matched_keywords,
                geo_unit=geo.name if geo else None,
                locality=geo.locality if geo else None,
                polling_station=geo.station if geo else None,
                priority_score=priority_score(result.score, recency_score(raw.published_at, now)),
                external_id=raw.external_id,
                engagement=raw.engagement,
            )

            analysis = analyses.get(candidate.fingerprint)
            wanted = should_analyse(result, config)
            if analysis is not None:
                item.apply_analysis(analysis)
            elif wanted:
                summary.unclassified += 1

            persistence["attempts"] += 1
            try:
                item_id, was_new = self.storage.upsert_item(item)
            except PersistenceError as e:
                persistence["failures"] += 1
                summary.failed += 1
                logger.error(f"Failed to store '{item.title[:50]}': {e}")
                continue

            if not was_new:
                summary.duplicates += 1
                continue
            summary.stored += 1

            if analysis is None:
                continue
            analysis.item_id = item_id
            persistence["attempts"] += 1
            try:
                if self.storage.insert_analysis(analysis):
                    summary.classified += 1
                    if analysis.is_fallback:
                        summary.fallback += 1
                    fresh.append((item, analysis))
            except PersistenceError as e:
                persistence["failures"] += 1
                summary.failed += 1
                logger.error(f"Failed to store analysis for item {item_id}: {e}")
        return fresh

    def _raise_alerts(self, fresh, summary, persistence, now):
        try:
            alerts = self.alert_engine.evaluate(fresh, self.storage, now)
        except PersistenceError as e:
            summary.failed += 1
            logger.error(f"Alert evaluation failed: {e}")
            return

        for alert in alerts:
            persistence["attempts"] += 1
            try:
                self.storage.insert_alert(alert)
            except PersistenceError as e:
                persistence["failures"] += 1
                summary.failed += 1
                logger.error(f"Failed to store alert '{alert.title}': {e}")
                continue
            summary.alerts += 1
            logger.warning(f"ALERT [{alert.severity}] {alert.title}")
            if self.notifier is not None:
                self.notifier(alert)

    def _finish(self, summary: RunSummary) -> RunSummary:
        summary.finished_at = utcnow()
        duration = (summary.finished_at - summary.started_at).total_seconds()

        logger.info("=" * 60)
        logger.info(f"Run complete for '{summary.config_id}' ({summary.status})")
        logger.info(f"Duration: {duration:.2f}s")
        logger.info(f"Fetched: {summary.fetched}")
        logger.info(f"Processed: {summary.processed}")
        logger.info(f"Duplicates: {summary.duplicates}")
        logger.info(f"Excluded: {summary.excluded}")
        logger.info(f"Retained: {summary.retained}")
        logger.info(f"Stored: {summary.stored}")
        logger.info(f"Classified: {summary.classified} ({summary.fallback} by heuristic)")
        logger.info(f"Unclassified: {summary.unclassified}")
        logger.info(f"Alerts: {summary.alerts}")
        logger.info(f"Failed: {summary.failed}")
        for error in summary.errors:
            logger.info(f"Source error: {error.source_id} ({error.kind}): {error.message}")
        logger.info("=" * 60)
        return summary
