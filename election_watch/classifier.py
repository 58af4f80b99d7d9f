"""Sentiment and threat classification with a local heuristic fallback."""

import json
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import replace
from typing import Callable, List, Optional, Tuple

import requests

from .errors import ClassifierError, ClassifierRateLimited, ParseError, QuotaExceeded
from .geo import GeoResolver
from .models import SENTIMENTS, SEVERITIES, SentimentAnalysis
from .normalize import find_terms
from .quota import QuotaGuard
from .taxonomy import (
    ELECTION_KEYWORDS,
    NEGATIVE_TERMS,
    PARTIES,
    POLITICAL_TERMS,
    POLITICIANS,
    POSITIVE_TERMS,
    THREAT_KEYWORDS,
)

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.x.ai/v1/chat/completions"
DEFAULT_MODEL = "grok-beta"
FALLBACK_CONFIDENCE = 0.4
MAX_PROMPT_CHARS = 4000

SYSTEM_PROMPT = (
    "You are an election monitoring analyst for Jamaica. Analyse the text for "
    "political sentiment and threats to a free and fair election. Respond with "
    "JSON only."
)

RESPONSE_FIELDS = (
    '{"overall_sentiment": "positive|negative|neutral", '
    '"sentiment_score": -1.0 to 1.0, "confidence": 0.0 to 1.0, '
    '"threat_level": "low|medium|high|critical", "risk_factors": [], '
    '"political_topics": [], "mentioned_parties": [], '
    '"mentioned_politicians": [], "parish_relevance": 0.0 to 1.0}'
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def extract_json(content: str) -> dict:
    """
    Pull the JSON object out of a model reply.

    Accepts bare JSON, a fenced ```json block, or JSON surrounded by prose.

    Raises:
        ParseError: if no JSON object can be decoded
    """
    candidates = []
    fenced = _FENCED_JSON.search(content or "")
    if fenced:
        candidates.append(fenced.group(1))
    candidates.append((content or "").strip())
    start, end = (content or "").find("{"), (content or "").rfind("}")
    if start != -1 and end > start:
        candidates.append(content[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    raise ParseError("Classifier reply contained no JSON object")


def _string_list(data: dict, key: str) -> List[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{key} must be a list, got {type(value).__name__}")
    return [str(v) for v in value]


def parse_response(content: str, model: str = DEFAULT_MODEL) -> SentimentAnalysis:
    """
    Map the structured reply onto a SentimentAnalysis.

    Raises:
        ParseError: on missing or out-of-range fields
    """
    data = extract_json(content)
    try:
        sentiment = str(data["overall_sentiment"]).lower()
        threat_level = str(data["threat_level"]).lower()
        if sentiment not in SENTIMENTS or threat_level not in SEVERITIES:
            raise ValueError(f"unexpected labels {sentiment}/{threat_level}")
        risk_factors = _string_list(data, "risk_factors")
        topics = _string_list(data, "political_topics")
        entities = _string_list(data, "mentioned_parties") + _string_list(
            data, "mentioned_politicians"
        )
        return SentimentAnalysis(
            sentiment=sentiment,
            score=float(data["sentiment_score"]),
            confidence=float(data["confidence"]),
            threat_level=threat_level,
            risk_factors=risk_factors,
            topics=topics,
            entities=entities,
            geo_relevance=float(data.get("parish_relevance") or 0.0),
            model=model,
            is_fallback=False,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ParseError(f"Invalid classifier reply: {e}") from e


class ChatClassifier:
    """Classifier backed by an OpenAI-compatible chat completions service."""

    def __init__(
        self,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        model: str = DEFAULT_MODEL,
        timeout: float = 30,
        guard: Optional[QuotaGuard] = None,
    ):
        self.api_key = api_key
        self.endpoint = endpoint
        self.model = model
        self.timeout = timeout
        self.guard = guard

    def build_messages(self, text: str, context: Optional[dict] = None) -> List[dict]:
        lines = []
        for key, value in (context or {}).items():
            if value:
                lines.append(f"{key}: {value}")
        lines.append(f"Text: {text[:MAX_PROMPT_CHARS]}")
        lines.append(f"Return JSON with exactly these fields: {RESPONSE_FIELDS}")
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": "\n".join(lines)},
        ]

    def classify(self, text: str, context: Optional[dict] = None) -> SentimentAnalysis:
        """
        Classify text with the external service.

        Raises:
            ClassifierRateLimited: on HTTP 429; never retried
            QuotaExceeded: when the local call budget is spent
            ClassifierError: on timeouts, other HTTP failures
            ParseError: on an unusable reply
        """
        payload = {
            "model": self.model,
            "messages": self.build_messages(text, context),
            "temperature": 0.1,
            "max_tokens": 2000,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        def _post():
            response = requests.post(
                self.endpoint, headers=headers, json=payload, timeout=self.timeout
            )
            if response.status_code == 429:
                raise ClassifierRateLimited(f"Rate limited by {self.endpoint}")
            response.raise_for_status()
            return response

        retry_on = (requests.exceptions.Timeout, requests.exceptions.ConnectionError)
        try:
            if self.guard is not None:
                response = self.guard.call(_post, retry_on=retry_on)
            else:
                response = _post()
        except requests.exceptions.RequestException as e:
            raise ClassifierError(f"Classifier request failed: {e}") from e

        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ParseError(f"Unexpected classifier response shape: {e}") from e

        usage = body.get("usage") or {}
        if self.guard is not None and usage.get("total_tokens"):
            self.guard.record_usage(int(usage["total_tokens"]))

        return parse_response(content, model=self.model)


class HeuristicClassifier:
    """Lexicon-based classifier used when the external service is unavailable."""

    def __init__(self, resolver: Optional[GeoResolver] = None):
        self.resolver = resolver or GeoResolver()

    def classify(self, text: str, context: Optional[dict] = None) -> SentimentAnalysis:
        positives = find_terms(text, POSITIVE_TERMS)
        negatives = find_terms(text, NEGATIVE_TERMS)
        score = max(-1.0, min(1.0, 0.1 * len(positives) - 0.15 * len(negatives)))
        if score > 0.1:
            sentiment = "positive"
        elif score < -0.1:
            sentiment = "negative"
        else:
            sentiment = "neutral"

        risk_factors = find_terms(text, THREAT_KEYWORDS)
        if len(risk_factors) > 3:
            threat_level = "critical"
        elif len(risk_factors) > 1:
            threat_level = "high"
        elif risk_factors:
            threat_level = "medium"
        else:
            threat_level = "low"

        entities = find_terms(text, PARTIES + POLITICIANS)
        topics = [t for t in find_terms(text, ELECTION_KEYWORDS + POLITICAL_TERMS)
                  if t not in entities]
        return SentimentAnalysis(
            sentiment=sentiment,
            score=score,
            confidence=FALLBACK_CONFIDENCE,
            threat_level=threat_level,
            risk_factors=risk_factors,
            topics=topics,
            entities=entities,
            geo_relevance=0.8 if self.resolver.is_local(text) else 0.2,
            model="heuristic",
            is_fallback=True,
        )


class ClassificationCache:
    """
    Primary classifier results keyed by item fingerprint.

    Entries are fresh for ``ttl`` seconds; expired entries are kept (up to
    ``max_entries``, oldest evicted first) so they can be served while the
    primary is failing.
    """

    def __init__(self, ttl: float = 600, max_entries: int = 1000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, SentimentAnalysis]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Tuple[Optional[SentimentAnalysis], bool]:
        """Cached result for ``key`` and whether it is still fresh."""
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None, False
        stored_at, analysis = entry
        return _copy(analysis), self._clock() - stored_at < self.ttl

    def put(self, key: str, analysis: SentimentAnalysis):
        if self.max_entries <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock(), _copy(analysis))
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class Classifier:
    """
    Primary classifier with heuristic fallback.

    A rate limit (or exhausted local quota) switches the rest of the run to
    the fallback without retrying the primary. Other primary failures fall
    back for that item only. If the fallback also fails, ``classify`` returns
    None and the item stays unclassified.

    With a cache and a key, fresh cached results skip the primary, and a
    stale cached result is preferred over the heuristic when the primary
    fails.
    """

    def __init__(self, primary: Optional[ChatClassifier], fallback: HeuristicClassifier,
                 cache: Optional[ClassificationCache] = None):
        self.primary = primary
        self.fallback = fallback
        self.cache = cache
        self._rate_limited = threading.Event()

    def start_run(self):
        """Give the primary path a fresh chance at the start of each run."""
        self._rate_limited.clear()

    @property
    def degraded(self) -> bool:
        return self._rate_limited.is_set()

    def classify(self, text: str, context: Optional[dict] = None,
                 key: Optional[str] = None) -> Optional[SentimentAnalysis]:
        """Classify ``text``; ``key`` is the item fingerprint used for caching."""
        cached, fresh = None, False
        if self.cache is not None and key is not None:
            cached, fresh = self.cache.get(key)
            if fresh:
                logger.debug(f"Classifier cache hit for {key}")
                return cached

        if self.primary is not None and not self._rate_limited.is_set():
            try:
                analysis = self.primary.classify(text, context)
                if self.cache is not None and key is not None:
                    self.cache.put(key, analysis)
                return analysis
            except (ClassifierRateLimited, QuotaExceeded) as e:
                if not self._rate_limited.is_set():
                    logger.warning(f"Classifier rate limited, using heuristic for rest of run: {e}")
                self._rate_limited.set()
            except (ClassifierError, ParseError) as e:
                logger.warning(f"Classifier failed, using heuristic: {e}")

        if cached is not None:
            logger.info(f"Serving stale classification for {key}")
            return cached

        try:
            return self.fallback.classify(text, context)
        except Exception as e:
            logger.error(f"Heuristic classifier failed: {e}")
            return None


def _copy(analysis: SentimentAnalysis) -> SentimentAnalysis:
    return replace(
        analysis,
        risk_factors=list(analysis.risk_factors),
        topics=list(analysis.topics),
        entities=list(analysis.entities),
        item_id=None,
    )
