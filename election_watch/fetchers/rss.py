"""RSS feed fetcher."""

import feedparser
import logging
from typing import List, Optional

from ..errors import ParseError
from ..models import RawItem, Source, utcnow
from ..normalize import parse_date
from ..quota import QuotaGuard
from .http import DEFAULT_USER_AGENT, http_get

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITEMS = 10


def parse_feed(content: bytes, source: Source) -> List[RawItem]:
    """
    Parse RSS/Atom content into raw items.

    Raises:
        ParseError: if the document is malformed and yields no entries
    """
    feed = feedparser.parse(content)

    if feed.bozo and not feed.entries:
        raise ParseError(f"Unreadable feed from {source.name}: {feed.bozo_exception}")
    if feed.bozo:
        logger.warning(f"RSS feed parsing warning for {source.name}: {feed.bozo_exception}")

    fetched_at = utcnow()
    limit = source.max_items or DEFAULT_MAX_ITEMS
    items = []

    for entry in feed.entries[:limit]:
        title = entry.get("title", "")

        summary = entry.get("summary", "") or entry.get("description", "")
        if not summary and entry.get("content"):
            summary = entry.content[0].get("value", "")

        link = entry.get("link", "") or entry.get("id", "")
        published_str = entry.get("published", "") or entry.get("updated", "")

        items.append(
            RawItem(
                source_id=source.id,
                title=title,
                body=summary or "",
                url=link,
                published_at=parse_date(published_str),
                fetched_at=fetched_at,
            )
        )

    logger.info(f"Parsed {len(items)} items from {source.name}")
    return items


def fetch_rss(
    source: Source,
    timeout: float = 10,
    guard: Optional[QuotaGuard] = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> List[RawItem]:
    """
    Fetch items from an RSS feed.

    The feed is downloaded with requests so the timeout applies, then handed
    to feedparser.

    Raises:
        SourceFetchError: on network or HTTP failure
        ParseError: on an unreadable feed
    """
    logger.debug(f"Fetching RSS feed: {source.name} from {source.endpoint}")
    response = http_get(source.endpoint, timeout=timeout, guard=guard, user_agent=user_agent)
    return parse_feed(response.content, source)
