"""Relevance scoring and filtering logic for items."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .geo import GeoResolver
from .models import MonitoringConfig, RawItem
from .normalize import find_terms
from .taxonomy import COUNTRY_MARKERS, LOCALITIES, POLITICAL_TERMS

logger = logging.getLogger(__name__)

MAX_SCORE = 10.0
KEYWORD_WEIGHT = 2
GEO_WEIGHT = 3
POLITICAL_TERM_WEIGHT = 1
TOPIC_WEIGHT_FACTOR = 0.5


@dataclass
class RelevanceResult:
    """Score for one item plus the terms that produced it."""

    score: float
    matched_keywords: List[str] = field(default_factory=list)
    geo_mentions: List[str] = field(default_factory=list)
    political_terms: List[str] = field(default_factory=list)
    rejected_reason: Optional[str] = None

    @property
    def rejected(self) -> bool:
        return self.rejected_reason is not None


def match_exclusion(text: str, exclude_keywords: List[str]) -> Optional[str]:
    """Return the first exclude keyword found in ``text``, if any."""
    hits = find_terms(text, exclude_keywords)
    return hits[0] if hits else None


def score(
    item: RawItem,
    config: MonitoringConfig,
    topic_weight: float,
    resolver: Optional[GeoResolver] = None,
) -> RelevanceResult:
    """
    Score an item against the monitoring taxonomy.

    Exclusion runs first and short-circuits. An item with neither a country
    marker nor an election keyword is rejected outright. Otherwise the score
    is ``2*keywords + 3*geo mentions + 1*political terms + 0.5*topic weight``
    capped at 10, and items under the relevance floor are rejected.

    Returns:
        RelevanceResult; ``rejected_reason`` is set for rejected items
    """
    text = item.text
    excluded = match_exclusion(text, config.exclude_keywords)
    if excluded:
        return RelevanceResult(score=0.0, rejected_reason=f"Matched exclude keyword: {excluded}")

    resolver = resolver or GeoResolver()
    keywords = find_terms(text, config.keywords)
    geo_mentions = resolver.mentions(text, config.geo_units)
    political = [t for t in find_terms(text, POLITICAL_TERMS) if t not in keywords]

    has_marker = bool(
        geo_mentions
        or find_terms(text, COUNTRY_MARKERS)
        or find_terms(text, list(LOCALITIES))
    )
    if not keywords and not has_marker:
        return RelevanceResult(score=0.0, rejected_reason="No country marker or election keyword")

    value = min(
        MAX_SCORE,
        KEYWORD_WEIGHT * len(keywords)
        + GEO_WEIGHT * len(geo_mentions)
        + POLITICAL_TERM_WEIGHT * len(political)
        + TOPIC_WEIGHT_FACTOR * topic_weight,
    )
    result = RelevanceResult(
        score=value,
        matched_keywords=keywords + political,
        geo_mentions=geo_mentions,
        political_terms=political,
    )
    if value < config.relevance_floor:
        result.rejected_reason = f"Below relevance floor ({value} < {config.relevance_floor})"
    return result


def should_analyse(result: RelevanceResult, config: MonitoringConfig) -> bool:
    """Only items at or above the analysis floor go to the classifier."""
    return not result.rejected and result.score >= config.analysis_floor


def recency_score(published_at: datetime, now: datetime) -> int:
    """10 for the last hour, falling to 2 for anything older than three days."""
    hours = (now - published_at).total_seconds() / 3600
    if hours < 1:
        return 10
    if hours < 6:
        return 8
    if hours < 24:
        return 6
    if hours < 72:
        return 4
    return 2


def priority_score(relevance: float, recency: int) -> float:
    """Display ordering weight: 70% relevance, 30% recency."""
    return round(relevance * 0.7 + recency * 0.3, 2)
