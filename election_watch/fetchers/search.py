"""Keyword search fetchers for a news API and a social search API."""

import logging
from typing import List, Optional

from ..errors import ParseError, SourceFetchError
from ..models import Engagement, RawItem, Source, utcnow
from ..normalize import parse_date
from ..quota import QuotaGuard
from .http import DEFAULT_USER_AGENT, http_get

logger = logging.getLogger(__name__)

NEWSAPI_ENDPOINT = "https://newsapi.org/v2/everything"
X_SEARCH_ENDPOINT = "https://api.twitter.com/2/tweets/search/recent"
DEFAULT_MAX_ITEMS = 50
MAX_QUERY_TERMS = 8
SOCIAL_TITLE_LENGTH = 100


def _quote(term: str) -> str:
    return f'"{term}"' if " " in term else term


def build_news_query(keywords: List[str], country: str = "Jamaica") -> str:
    """``Jamaica AND (JLP OR PNP OR "Andrew Holness" ...)``"""
    terms = " OR ".join(_quote(k) for k in keywords[:MAX_QUERY_TERMS])
    return f"{country} AND ({terms})" if terms else country


def build_social_query(keywords: List[str], markers: Optional[List[str]] = None) -> str:
    """Keyword query restricted to the country, English, and no retweets."""
    markers = markers or ["Jamaica", "JA"]
    terms = " OR ".join(_quote(k) for k in keywords[:MAX_QUERY_TERMS])
    places = " OR ".join(_quote(m) for m in markers)
    return f"({terms}) ({places}) -is:retweet lang:en"


def _json(response, source: Source) -> dict:
    try:
        return response.json()
    except ValueError as e:
        raise ParseError(f"Invalid JSON from {source.name}: {e}") from e


def fetch_news_search(
    source: Source,
    keywords: List[str],
    api_key: str,
    timeout: float = 10,
    guard: Optional[QuotaGuard] = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> List[RawItem]:
    """Query a NewsAPI-style ``/v2/everything`` endpoint."""
    if not api_key:
        raise SourceFetchError(f"No API key configured for {source.name}")

    limit = source.max_items or DEFAULT_MAX_ITEMS
    params = {
        "q": build_news_query(keywords),
        "language": "en",
        "sortBy": "publishedAt",
        "pageSize": min(limit, 100),
    }
    response = http_get(
        source.endpoint or NEWSAPI_ENDPOINT,
        timeout=timeout,
        guard=guard,
        headers={"X-Api-Key": api_key},
        params=params,
        user_agent=user_agent,
    )
    payload = _json(response, source)
    if payload.get("status") == "error":
        raise SourceFetchError(f"{source.name}: {payload.get('message', 'search failed')}")
    articles = payload.get("articles")
    if not isinstance(articles, list):
        raise ParseError(f"{source.name}: response has no articles list")

    fetched_at = utcnow()
    items = []
    for article in articles[:limit]:
        items.append(
            RawItem(
                source_id=source.id,
                title=article.get("title") or "",
                body=article.get("description") or article.get("content") or "",
                url=article.get("url") or "",
                published_at=parse_date(article.get("publishedAt")),
                fetched_at=fetched_at,
            )
        )
    logger.info(f"Search returned {len(items)} articles from {source.name}")
    return items


def fetch_social_search(
    source: Source,
    keywords: List[str],
    bearer_token: str,
    timeout: float = 10,
    guard: Optional[QuotaGuard] = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> List[RawItem]:
    """Query a recent-posts search endpoint and keep engagement counts."""
    if not bearer_token:
        raise SourceFetchError(f"No bearer token configured for {source.name}")

    limit = source.max_items or DEFAULT_MAX_ITEMS
    params = {
        "query": build_social_query(keywords),
        "max_results": max(10, min(limit, 100)),
        "tweet.fields": "created_at,public_metrics,author_id",
    }
    response = http_get(
        source.endpoint or X_SEARCH_ENDPOINT,
        timeout=timeout,
        guard=guard,
        headers={"Authorization": f"Bearer {bearer_token}"},
        params=params,
        user_agent=user_agent,
    )
    payload = _json(response, source)
    posts = payload.get("data", [])
    if not isinstance(posts, list):
        raise ParseError(f"{source.name}: response data is not a list")

    fetched_at = utcnow()
    items = []
    for post in posts[:limit]:
        text = post.get("text", "")
        post_id = str(post.get("id", ""))
        metrics = post.get("public_metrics") or {}
        items.append(
            RawItem(
                source_id=source.id,
                title=text[:SOCIAL_TITLE_LENGTH],
                body=text,
                url=f"https://x.com/i/web/status/{post_id}" if post_id else "",
                published_at=parse_date(post.get("created_at")),
                fetched_at=fetched_at,
                external_id=post_id or None,
                engagement=Engagement(
                    likes=int(metrics.get("like_count", 0)),
                    shares=int(metrics.get("retweet_count", 0)),
                    replies=int(metrics.get("reply_count", 0)),
                    quotes=int(metrics.get("quote_count", 0)),
                ),
            )
        )
    logger.info(f"Search returned {len(items)} posts from {source.name}")
    return items
