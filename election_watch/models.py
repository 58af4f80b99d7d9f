"""Data models for election monitoring."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, List

SOURCE_KINDS = ("rss", "html", "searchApi")
SEARCH_PROVIDERS = ("newsapi", "x")
SENTIMENTS = ("positive", "negative", "neutral")
SEVERITIES = ("low", "medium", "high", "critical")
ALERT_TYPES = ("threat_detected", "viral_content", "sentiment_shift")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Source:
    """A content source in the registry."""

    id: str
    name: str
    kind: str  # "rss" | "html" | "searchApi"
    endpoint: str
    is_active: bool = True
    priority: int = 3  # 1-5
    topic_weight: int = 5  # 1-10
    provider: Optional[str] = None  # searchApi only: "newsapi" | "x"
    max_items: Optional[int] = None

    def __post_init__(self):
        if self.kind not in SOURCE_KINDS:
            raise ValueError(f"Unknown source kind for {self.id}: {self.kind}")
        if not 1 <= self.priority <= 5:
            raise ValueError(f"Source {self.id} priority must be 1-5, got {self.priority}")
        if not 1 <= self.topic_weight <= 10:
            raise ValueError(f"Source {self.id} topic weight must be 1-10, got {self.topic_weight}")
        if self.kind == "searchApi" and self.provider not in SEARCH_PROVIDERS:
            raise ValueError(f"Search source {self.id} needs provider in {SEARCH_PROVIDERS}")

    @classmethod
    def from_dict(cls, data: dict) -> "Source":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            kind=data["kind"],
            endpoint=data.get("endpoint", ""),
            is_active=data.get("is_active", True),
            priority=int(data.get("priority", 3)),
            topic_weight=int(data.get("topic_weight", 5)),
            provider=data.get("provider"),
            max_items=data.get("max_items"),
        )


@dataclass(frozen=True)
class PollingStation:
    """A polling location, the finest geo unit below parish."""

    code: str
    name: str
    parish: str

    @classmethod
    def from_dict(cls, data: dict) -> "PollingStation":
        return cls(code=str(data["code"]), name=data["name"], parish=data["parish"])


@dataclass(frozen=True)
class Engagement:
    """Social engagement counters for a post."""

    likes: int = 0
    shares: int = 0
    replies: int = 0
    quotes: int = 0

    @property
    def total(self) -> int:
        return self.likes + self.shares + self.replies


@dataclass(frozen=True)
class RawItem:
    """One fetched item in canonical form. Never mutated after creation."""

    source_id: str
    title: str
    body: str
    url: str
    published_at: Optional[datetime]
    fetched_at: datetime
    external_id: Optional[str] = None
    engagement: Optional[Engagement] = None

    @property
    def text(self) -> str:
        return f"{self.title} {self.body}".strip()


@dataclass
class SentimentAnalysis:
    """Classifier output. Same shape for the external and heuristic paths."""

    sentiment: str  # "positive" | "negative" | "neutral"
    score: float  # -1..1
    confidence: float  # 0..1
    threat_level: str  # "low" | "medium" | "high" | "critical"
    risk_factors: List[str] = field(default_factory=list)
    topics: List[str] = field(default_factory=list)
    entities: List[str] = field(default_factory=list)
    geo_relevance: float = 0.0
    model: str = "heuristic"
    is_fallback: bool = False
    item_id: Optional[int] = None

    def __post_init__(self):
        if self.sentiment not in SENTIMENTS:
            raise ValueError(f"Invalid sentiment: {self.sentiment}")
        if self.threat_level not in SEVERITIES:
            raise ValueError(f"Invalid threat level: {self.threat_level}")
        self.score = max(-1.0, min(1.0, float(self.score)))
        self.confidence = max(0.0, min(1.0, float(self.confidence)))


@dataclass
class ProcessedItem:
    """A scored item as stored in the repository."""

    fingerprint: str
    title: str
    body: str
    url: str
    source: str
    published_at: datetime
    relevance_score: float
    matched_keywords: List[str] = field(default_factory=list)
    geo_unit: Optional[str] = None
    locality: Optional[str] = None
    polling_station: Optional[str] = None  # station code
    sentiment: Optional[str] = None
    sentiment_score: Optional[float] = None
    threat_level: Optional[str] = None
    is_duplicate: bool = False
    priority_score: float = 0.0
    external_id: Optional[str] = None
    engagement: Optional[Engagement] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def apply_analysis(self, analysis: SentimentAnalysis):
        """Copy classifier fields onto the item before it is first stored."""
        self.sentiment = analysis.sentiment
        self.sentiment_score = analysis.score
        self.threat_level = analysis.threat_level


@dataclass
class Alert:
    """An operator-facing alert raised by a risk pattern."""

    type: str  # "threat_detected" | "viral_content" | "sentiment_shift"
    severity: str
    title: str
    description: str
    geo_unit: Optional[str] = None
    related_item_ids: List[int] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self):
        if self.type not in ALERT_TYPES:
            raise ValueError(f"Invalid alert type: {self.type}")
        if self.severity not in SEVERITIES:
            raise ValueError(f"Invalid alert severity: {self.severity}")


@dataclass
class MonitoringConfig:
    """Monitoring policy plus its schedule state."""

    id: str
    keywords: List[str]
    exclude_keywords: List[str]
    geo_units: List[str]
    frequency_minutes: int = 30
    max_items_per_run: int = 50
    relevance_floor: float = 5.0
    analysis_floor: float = 6.0
    last_executed: Optional[datetime] = None
    next_execution: Optional[datetime] = None
    is_active: bool = True

    def __post_init__(self):
        if self.frequency_minutes <= 0:
            raise ValueError(f"Config {self.id}: frequency_minutes must be positive")
        if self.max_items_per_run <= 0:
            raise ValueError(f"Config {self.id}: max_items_per_run must be positive")
        if self.analysis_floor < self.relevance_floor:
            raise ValueError(
                f"Config {self.id}: analysis_floor ({self.analysis_floor}) "
                f"must be >= relevance_floor ({self.relevance_floor})"
            )

    @property
    def frequency(self) -> timedelta:
        return timedelta(minutes=self.frequency_minutes)

    def is_due(self, now: datetime) -> bool:
        """True if the schedule gate allows a run at ``now``."""
        if self.next_execution is None:
            return True
        return now >= self.next_execution

    @classmethod
    def from_dict(cls, data: dict, defaults: Optional[dict] = None) -> "MonitoringConfig":
        """Build a config from a YAML policy entry, filling lists from defaults."""
        defaults = defaults or {}
        return cls(
            id=str(data["id"]),
            keywords=list(data.get("keywords") or defaults.get("keywords", [])),
            exclude_keywords=list(
                data.get("exclude_keywords") or defaults.get("exclude_keywords", [])
            ),
            geo_units=list(data.get("geo_units") or defaults.get("geo_units", [])),
            frequency_minutes=int(data.get("frequency_minutes", 30)),
            max_items_per_run=int(data.get("max_items_per_run", 50)),
            relevance_floor=float(data.get("relevance_floor", 5.0)),
            analysis_floor=float(data.get("analysis_floor", 6.0)),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass
class SourceError:
    """A per-source failure recorded on the run summary."""

    source_id: str
    kind: str
    message: str


@dataclass
class RunSummary:
    """Counts reported by one monitoring run."""

    config_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    fetched: int = 0
    processed: int = 0
    duplicates: int = 0
    excluded: int = 0
    retained: int = 0
    stored: int = 0
    classified: int = 0
    fallback: int = 0
    unclassified: int = 0
    failed: int = 0
    alerts: int = 0
    errors: List[SourceError] = field(default_factory=list)
    status: str = "ok"  # "ok" | "partial" | "failed" | "cancelled"

    def as_dict(self) -> dict:
        return {
            "config_id": self.config_id,
            "status": self.status,
            "processed": self.processed,
            "stored": self.stored,
            "alerts": self.alerts,
            "errors": [
                {"source_id": e.source_id, "kind": e.kind, "message": e.message}
                for e in self.errors
            ],
            "fetched": self.fetched,
            "retained": self.retained,
            "duplicates": self.duplicates,
            "excluded": self.excluded,
            "classified": self.classified,
            "fallback": self.fallback,
            "unclassified": self.unclassified,
            "failed": self.failed,
        }
