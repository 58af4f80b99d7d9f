"""Risk patterns evaluated over freshly classified items."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from .errors import PersistenceError
from .models import SEVERITIES, Alert, Engagement, ProcessedItem, SentimentAnalysis, utcnow
from .storage import Storage

logger = logging.getLogger(__name__)

THREAT_RECOMMENDATIONS = [
    "Investigate content source",
    "Monitor for similar posts",
    "Consider escalation to authorities",
]
VIRAL_RECOMMENDATIONS = [
    "Monitor for misinformation spread",
    "Track sentiment shifts",
    "Prepare fact-check response if needed",
]
SHIFT_RECOMMENDATIONS = [
    "Review recent coverage for the parish",
    "Brief field observers in the area",
]


def downgrade(severity: str) -> str:
    """One step lower on the severity scale, never below low."""
    return SEVERITIES[max(0, SEVERITIES.index(severity) - 1)]


def average_sentiment(items: List[ProcessedItem]) -> Optional[float]:
    scores = [i.sentiment_score for i in items if i.sentiment_score is not None]
    if not scores:
        return None
    return sum(scores) / len(scores)


class AlertEngine:
    """
    Runs the threat, viral and sentiment-shift checks in that order.

    Each pattern fires at most once per item (or per geo unit window) in a
    single evaluation. Nothing is deduplicated across runs.
    """

    def __init__(
        self,
        viral_threshold: int = 1000,
        viral_high_threshold: int = 10000,
        shift_threshold: float = -0.3,
        window_hours: float = 24,
        min_window_items: int = 3,
        discount_fallback: bool = False,
    ):
        self.viral_threshold = viral_threshold
        self.viral_high_threshold = viral_high_threshold
        self.shift_threshold = shift_threshold
        self.window = timedelta(hours=window_hours)
        self.min_window_items = min_window_items
        self.discount_fallback = discount_fallback

    @classmethod
    def from_config(cls, settings: Optional[dict]) -> "AlertEngine":
        settings = settings or {}
        return cls(
            viral_threshold=int(settings.get("viral_threshold", 1000)),
            viral_high_threshold=int(settings.get("viral_high_threshold", 10000)),
            shift_threshold=float(settings.get("sentiment_shift_threshold", -0.3)),
            window_hours=float(settings.get("sentiment_window_hours", 24)),
            min_window_items=int(settings.get("min_window_items", 3)),
            discount_fallback=bool(settings.get("discount_fallback", False)),
        )

    def evaluate(
        self,
        new_items: List[Tuple[ProcessedItem, SentimentAnalysis]],
        storage: Storage,
        now: Optional[datetime] = None,
    ) -> List[Alert]:
        """
        Evaluate freshly stored, classified items.

        Args:
            new_items: (item, analysis) pairs; items must already have ids
            storage: source of duplicate volume and of the recent window for
                sentiment-shift checks; read failures skip that check only
            now: evaluation time

        Returns:
            Alerts to persist, in pattern order
        """
        now = now or utcnow()
        alerts = []
        fired = set()

        for item, analysis in new_items:
            alert = self.check_threat(item, analysis, now)
            if alert and ("threat", item.id) not in fired:
                fired.add(("threat", item.id))
                alerts.append(alert)

        for item, _ in new_items:
            copies, extra = self._duplicate_volume(item, storage)
            alert = self.check_viral(item, now, extra=extra, copies=copies)
            if alert and ("viral", item.id) not in fired:
                fired.add(("viral", item.id))
                alerts.append(alert)

        geo_units = []
        for item, _ in new_items:
            if item.geo_unit and item.geo_unit not in geo_units:
                geo_units.append(item.geo_unit)
        for geo_unit in geo_units:
            try:
                alert = self.check_sentiment_shift(geo_unit, storage, now)
            except PersistenceError as e:
                logger.error(f"Sentiment shift check failed for {geo_unit}: {e}")
                continue
            if alert and ("shift", geo_unit) not in fired:
                fired.add(("shift", geo_unit))
                alerts.append(alert)

        if alerts:
            logger.info(f"Raised {len(alerts)} alerts")
        return alerts

    def _duplicate_volume(self, item: ProcessedItem,
                          storage: Storage) -> Tuple[int, Optional[Engagement]]:
        try:
            return storage.occurrence_volume(item.fingerprint)
        except PersistenceError as e:
            logger.error(f"Could not read duplicate volume for {item.fingerprint}: {e}")
            return 0, None

    def check_threat(self, item: ProcessedItem, analysis: SentimentAnalysis,
                     now: datetime) -> Optional[Alert]:
        if analysis.threat_level not in ("high", "critical"):
            return None
        severity = analysis.threat_level
        if self.discount_fallback and analysis.is_fallback:
            severity = downgrade(severity)
        factors = ", ".join(analysis.risk_factors) or "none listed"
        return Alert(
            type="threat_detected",
            severity=severity,
            title=f"{analysis.threat_level.upper()} Threat Detected",
            description=f"Risk factors: {factors}. Source: {item.source} - {item.title}",
            geo_unit=item.geo_unit,
            related_item_ids=[item.id],
            recommendations=list(THREAT_RECOMMENDATIONS),
            created_at=now,
        )

    def check_viral(self, item: ProcessedItem, now: datetime,
                    extra: Optional[Engagement] = None, copies: int = 0) -> Optional[Alert]:
        """
        Alert on engagement above the viral mark.

        ``extra`` is the engagement carried by duplicate sightings of the same
        content, counted together with the item's own.
        """
        if item.engagement is None and extra is None:
            return None
        total = sum(e.total for e in (item.engagement, extra) if e is not None)
        if total <= self.viral_threshold:
            return None
        spread = f" across {copies + 1} copies" if copies else ""
        return Alert(
            type="viral_content",
            severity="high" if total > self.viral_high_threshold else "medium",
            title="Viral Election Content Detected",
            description=f"Post gaining significant traction: {total} total engagements{spread}",
            geo_unit=item.geo_unit,
            related_item_ids=[item.id],
            recommendations=list(VIRAL_RECOMMENDATIONS),
            created_at=now,
        )

    def check_sentiment_shift(self, geo_unit: str, storage: Storage,
                              now: datetime) -> Optional[Alert]:
        """Alert when the window average drops below the threshold for the first time."""
        current = [
            i for i in storage.get_recent_items(geo_unit, since=now - self.window)
            if i.sentiment_score is not None
        ]
        if len(current) < self.min_window_items:
            return None
        current_avg = average_sentiment(current)
        if current_avg >= self.shift_threshold:
            return None

        prior = storage.get_recent_items(
            geo_unit, since=now - 2 * self.window, until=now - self.window
        )
        prior_avg = average_sentiment(prior)
        if prior_avg is not None and prior_avg < self.shift_threshold:
            return None

        severity = "high" if current_avg <= 2 * self.shift_threshold else "medium"
        prior_text = f"{prior_avg:.2f}" if prior_avg is not None else "no data"
        return Alert(
            type="sentiment_shift",
            severity=severity,
            title=f"Negative Sentiment Shift in {geo_unit}",
            description=(
                f"Average sentiment {current_avg:.2f} across {len(current)} items "
                f"(prior window: {prior_text})"
            ),
            geo_unit=geo_unit,
            related_item_ids=[i.id for i in current],
            recommendations=list(SHIFT_RECOMMENDATIONS),
            created_at=now,
        )
