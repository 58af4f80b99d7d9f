"""SQLite repository for items, analyses, alerts and monitoring configs."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import PersistenceError
from .models import (
    Alert,
    Engagement,
    MonitoringConfig,
    ProcessedItem,
    SentimentAnalysis,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

SUMMARY_LEVELS = ("geo_unit", "polling_station")

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        fingerprint TEXT NOT NULL UNIQUE,
        title TEXT NOT NULL,
        body TEXT NOT NULL,
        url TEXT NOT NULL,
        source TEXT NOT NULL,
        external_id TEXT,
        published_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        relevance_score REAL NOT NULL,
        priority_score REAL NOT NULL DEFAULT 0,
        matched_keywords TEXT NOT NULL,
        geo_unit TEXT,
        locality TEXT,
        polling_station TEXT,
        sentiment TEXT,
        sentiment_score REAL,
        threat_level TEXT,
        likes INTEGER,
        shares INTEGER,
        replies INTEGER,
        quotes INTEGER,
        is_duplicate INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_items_geo_published ON items (geo_unit, published_at)",
    "CREATE INDEX IF NOT EXISTS idx_items_station ON items (polling_station)",
    # Social posts are also unique by post id
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_items_external_id
    ON items (external_id) WHERE external_id IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS analyses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        item_id INTEGER NOT NULL UNIQUE REFERENCES items (id),
        sentiment TEXT NOT NULL,
        score REAL NOT NULL,
        confidence REAL NOT NULL,
        threat_level TEXT NOT NULL,
        risk_factors TEXT NOT NULL,
        topics TEXT NOT NULL,
        entities TEXT NOT NULL,
        geo_relevance REAL NOT NULL,
        model TEXT NOT NULL,
        is_fallback INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS alerts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        alert_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        geo_unit TEXT,
        related_item_ids TEXT NOT NULL,
        recommendations TEXT NOT NULL,
        created_at TEXT NOT NULL,
        is_resolved INTEGER NOT NULL DEFAULT 0,
        resolved_at TEXT,
        acknowledged_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS occurrences (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        fingerprint TEXT NOT NULL,
        source TEXT NOT NULL,
        url TEXT NOT NULL,
        seen_at TEXT NOT NULL,
        likes INTEGER,
        shares INTEGER,
        replies INTEGER,
        quotes INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_occurrences_fingerprint ON occurrences (fingerprint)",
    """
    CREATE TABLE IF NOT EXISTS monitoring_configs (
        id TEXT PRIMARY KEY,
        keywords TEXT NOT NULL,
        exclude_keywords TEXT NOT NULL,
        geo_units TEXT NOT NULL,
        frequency_minutes INTEGER NOT NULL,
        max_items_per_run INTEGER NOT NULL,
        relevance_floor REAL NOT NULL,
        analysis_floor REAL NOT NULL,
        last_executed TEXT,
        next_execution TEXT,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Storage:
    """
    Manages the SQLite database behind the pipeline.

    Items are keyed by fingerprint, so writing the same item twice is
    harmless. Every sqlite3 error surfaces as PersistenceError.
    """

    def __init__(self, db_path: str = "data/election_watch.sqlite"):
        """Initialize storage with database path."""
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(self.db_path, timeout=30)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Database error: {e}") from e
        finally:
            conn.close()

    def _init_db(self):
        """Initialize the database schema."""
        with self._connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logger.debug(f"Initialized database at {self.db_path}")

    # Items

    def is_seen(self, fingerprint: str, external_id: Optional[str] = None) -> bool:
        """Check if an item with this fingerprint (or social post id) is already stored."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM items WHERE fingerprint = ? OR (external_id IS NOT NULL AND external_id = ?)",
                (fingerprint, external_id),
            ).fetchone()
        return row is not None

    def upsert_item(self, item: ProcessedItem) -> Tuple[int, bool]:
        """
        Insert an item unless its fingerprint or post id is already stored.

        Returns:
            Tuple of (item_id, was_new)
        """
        engagement = item.engagement or Engagement()
        created_at = item.created_at or utcnow()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO items (
                    fingerprint, title, body, url, source, external_id,
                    published_at, created_at, relevance_score, priority_score,
                    matched_keywords, geo_unit, locality, polling_station,
                    sentiment, sentiment_score, threat_level, likes, shares,
                    replies, quotes, is_duplicate
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.fingerprint, item.title, item.body, item.url, item.source,
                    item.external_id, _iso(item.published_at), _iso(created_at),
                    item.relevance_score, item.priority_score,
                    json.dumps(item.matched_keywords), item.geo_unit, item.locality,
                    item.polling_station,
                    item.sentiment, item.sentiment_score, item.threat_level,
                    engagement.likes if item.engagement else None,
                    engagement.shares if item.engagement else None,
                    engagement.replies if item.engagement else None,
                    engagement.quotes if item.engagement else None,
                    int(item.is_duplicate),
                ),
            )
            if cursor.rowcount == 1:
                item_id = cursor.lastrowid
                was_new = True
            else:
                item_id = conn.execute(
                    """
                    SELECT id FROM items
                    WHERE fingerprint = ? OR (external_id IS NOT NULL AND external_id = ?)
                    ORDER BY fingerprint = ? DESC
                    LIMIT 1
                    """,
                    (item.fingerprint, item.external_id, item.fingerprint),
                ).fetchone()["id"]
                was_new = False
        item.id = item_id
        item.created_at = created_at
        logger.debug(f"Upserted item {item_id} (new={was_new}): {item.title[:50]}...")
        return item_id, was_new

    def get_item(self, item_id: int) -> Optional[ProcessedItem]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        return self._row_to_item(row) if row else None

    def get_recent_items(
        self,
        geo_unit: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        polling_station: Optional[str] = None,
    ) -> List[ProcessedItem]:
        """Items published in ``[since, until)``, optionally for one geo unit or station."""
        clauses, params = [], []
        if geo_unit is not None:
            clauses.append("geo_unit = ?")
            params.append(geo_unit)
        if polling_station is not None:
            clauses.append("polling_station = ?")
            params.append(polling_station)
        if since is not None:
            clauses.append("published_at >= ?")
            params.append(_iso(since))
        if until is not None:
            clauses.append("published_at < ?")
            params.append(_iso(until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM items {where} ORDER BY published_at DESC", params
            ).fetchall()
        return [self._row_to_item(r) for r in rows]

    def get_item_count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM items").fetchone()[0]

    def _row_to_item(self, row: sqlite3.Row) -> ProcessedItem:
        engagement = None
        if row["likes"] is not None:
            engagement = Engagement(
                likes=row["likes"], shares=row["shares"],
                replies=row["replies"], quotes=row["quotes"],
            )
        return ProcessedItem(
            id=row["id"],
            fingerprint=row["fingerprint"],
            title=row["title"],
            body=row["body"],
            url=row["url"],
            source=row["source"],
            external_id=row["external_id"],
            published_at=_dt(row["published_at"]),
            created_at=_dt(row["created_at"]),
            relevance_score=row["relevance_score"],
            priority_score=row["priority_score"],
            matched_keywords=json.loads(row["matched_keywords"]),
            geo_unit=row["geo_unit"],
            locality=row["locality"],
            polling_station=row["polling_station"],
            sentiment=row["sentiment"],
            sentiment_score=row["sentiment_score"],
            threat_level=row["threat_level"],
            engagement=engagement,
            is_duplicate=bool(row["is_duplicate"]),
        )

    # Occurrences

    def record_occurrence(self, fingerprint: str, source: str, url: str,
                          engagement: Optional[Engagement] = None):
        """Log a skipped duplicate sighting, with its engagement, for volume counts."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO occurrences (
                    fingerprint, source, url, seen_at, likes, shares, replies, quotes
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    fingerprint, source, url, _iso(utcnow()),
                    engagement.likes if engagement else None,
                    engagement.shares if engagement else None,
                    engagement.replies if engagement else None,
                    engagement.quotes if engagement else None,
                ),
            )

    def occurrence_count(self, fingerprint: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM occurrences WHERE fingerprint = ?", (fingerprint,)
            ).fetchone()[0]

    def occurrence_volume(self, fingerprint: str) -> Tuple[int, Optional[Engagement]]:
        """
        Sightings of a duplicate and their summed engagement.

        Returns:
            Tuple of (count, engagement); engagement is None when no sighting
            carried counters
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS copies, COUNT(likes) AS counted,
                       COALESCE(SUM(likes), 0) AS likes,
                       COALESCE(SUM(shares), 0) AS shares,
                       COALESCE(SUM(replies), 0) AS replies,
                       COALESCE(SUM(quotes), 0) AS quotes
                FROM occurrences WHERE fingerprint = ?
                """,
                (fingerprint,),
            ).fetchone()
        if not row["counted"]:
            return row["copies"], None
        return row["copies"], Engagement(
            likes=row["likes"], shares=row["shares"],
            replies=row["replies"], quotes=row["quotes"],
        )

    # Analyses

    def insert_analysis(self, analysis: SentimentAnalysis) -> bool:
        """Store an analysis; returns False if the item already has one."""
        if analysis.item_id is None:
            raise PersistenceError("Analysis has no item_id")
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO analyses (
                    item_id, sentiment, score, confidence, threat_level,
                    risk_factors, topics, entities, geo_relevance, model,
                    is_fallback, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    analysis.item_id, analysis.sentiment, analysis.score,
                    analysis.confidence, analysis.threat_level,
                    json.dumps(analysis.risk_factors), json.dumps(analysis.topics),
                    json.dumps(analysis.entities), analysis.geo_relevance,
                    analysis.model, int(analysis.is_fallback), _iso(utcnow()),
                ),
            )
            inserted = cursor.rowcount == 1
        if not inserted:
            logger.debug(f"Item {analysis.item_id} already has an analysis")
        return inserted

    def get_analysis(self, item_id: int) -> Optional[SentimentAnalysis]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM analyses WHERE item_id = ?", (item_id,)
            ).fetchone()
        if row is None:
            return None
        return SentimentAnalysis(
            item_id=row["item_id"],
            sentiment=row["sentiment"],
            score=row["score"],
            confidence=row["confidence"],
            threat_level=row["threat_level"],
            risk_factors=json.loads(row["risk_factors"]),
            topics=json.loads(row["topics"]),
            entities=json.loads(row["entities"]),
            geo_relevance=row["geo_relevance"],
            model=row["model"],
            is_fallback=bool(row["is_fallback"]),
        )

    def get_analysis_count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM analyses").fetchone()[0]

    def geo_sentiment_summary(self, since: datetime, by: str = "geo_unit") -> List[dict]:
        """
        Classified item count and average sentiment since ``since``.

        Args:
            since: window start
            by: "geo_unit" for parishes or "polling_station" for stations
        """
        if by not in SUMMARY_LEVELS:
            raise ValueError(f"Cannot summarise by {by!r}")
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {by} AS unit, COUNT(*) AS items, AVG(sentiment_score) AS average
                FROM items
                WHERE {by} IS NOT NULL AND sentiment_score IS NOT NULL
                  AND published_at >= ?
                GROUP BY {by}
                ORDER BY average ASC
                """,
                (_iso(since),),
            ).fetchall()
        return [
            {by: r["unit"], "items": r["items"], "average_sentiment": r["average"]}
            for r in rows
        ]

    # Alerts

    def insert_alert(self, alert: Alert) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO alerts (
                    alert_type, severity, title, description, geo_unit,
                    related_item_ids, recommendations, created_at, is_resolved
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    alert.type, alert.severity, alert.title, alert.description,
                    alert.geo_unit, json.dumps(alert.related_item_ids),
                    json.dumps(alert.recommendations), _iso(alert.created_at),
                    int(alert.is_resolved),
                ),
            )
            alert.id = cursor.lastrowid
        logger.debug(f"Stored alert {alert.id}: {alert.title}")
        return alert.id

    def get_alerts(self, include_resolved: bool = False) -> List[Alert]:
        query = "SELECT * FROM alerts"
        if not include_resolved:
            query += " WHERE is_resolved = 0"
        query += " ORDER BY created_at DESC, id DESC"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [
            Alert(
                id=r["id"],
                type=r["alert_type"],
                severity=r["severity"],
                title=r["title"],
                description=r["description"],
                geo_unit=r["geo_unit"],
                related_item_ids=json.loads(r["related_item_ids"]),
                recommendations=json.loads(r["recommendations"]),
                created_at=_dt(r["created_at"]),
                is_resolved=bool(r["is_resolved"]),
                resolved_at=_dt(r["resolved_at"]),
                acknowledged_at=_dt(r["acknowledged_at"]),
            )
            for r in rows
        ]

    def resolve_alert(self, alert_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE alerts SET is_resolved = 1, resolved_at = ? WHERE id = ? AND is_resolved = 0",
                (_iso(utcnow()), alert_id),
            )
        return cursor.rowcount == 1

    def acknowledge_alert(self, alert_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE alerts SET acknowledged_at = ? WHERE id = ? AND acknowledged_at IS NULL",
                (_iso(utcnow()), alert_id),
            )
        return cursor.rowcount == 1

    # Monitoring configs

    def save_config(self, config: MonitoringConfig):
        """Insert a config or update its policy fields, keeping schedule state."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO monitoring_configs (
                    id, keywords, exclude_keywords, geo_units, frequency_minutes,
                    max_items_per_run, relevance_floor, analysis_floor,
                    last_executed, next_execution, is_active
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    keywords = excluded.keywords,
                    exclude_keywords = excluded.exclude_keywords,
                    geo_units = excluded.geo_units,
                    frequency_minutes = excluded.frequency_minutes,
                    max_items_per_run = excluded.max_items_per_run,
                    relevance_floor = excluded.relevance_floor,
                    analysis_floor = excluded.analysis_floor,
                    is_active = excluded.is_active
                """,
                (
                    config.id, json.dumps(config.keywords),
                    json.dumps(config.exclude_keywords), json.dumps(config.geo_units),
                    config.frequency_minutes, config.max_items_per_run,
                    config.relevance_floor, config.analysis_floor,
                    _iso(config.last_executed), _iso(config.next_execution),
                    int(config.is_active),
                ),
            )

    def get_configs(self, config_id: Optional[str] = None) -> List[MonitoringConfig]:
        """All configs, or the one matching ``config_id``."""
        query, params = "SELECT * FROM monitoring_configs", ()
        if config_id is not None:
            query, params = query + " WHERE id = ?", (config_id,)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [
            MonitoringConfig(
                id=r["id"],
                keywords=json.loads(r["keywords"]),
                exclude_keywords=json.loads(r["exclude_keywords"]),
                geo_units=json.loads(r["geo_units"]),
                frequency_minutes=r["frequency_minutes"],
                max_items_per_run=r["max_items_per_run"],
                relevance_floor=r["relevance_floor"],
                analysis_floor=r["analysis_floor"],
                last_executed=_dt(r["last_executed"]),
                next_execution=_dt(r["next_execution"]),
                is_active=bool(r["is_active"]),
            )
            for r in rows
        ]

    def update_config_execution(self, config_id: str, last_executed: datetime,
                                next_execution: datetime):
        with self._connect() as conn:
            conn.execute(
                "UPDATE monitoring_configs SET last_executed = ?, next_execution = ? WHERE id = ?",
                (_iso(last_executed), _iso(next_execution), config_id),
            )
