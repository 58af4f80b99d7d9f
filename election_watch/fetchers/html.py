"""HTML page fetcher that harvests headline links."""

import logging
from typing import List, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from ..errors import ParseError
from ..models import RawItem, Source, utcnow
from ..normalize import resolve_url
from ..quota import QuotaGuard
from .http import DEFAULT_USER_AGENT, http_get

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITEMS = 15
MIN_HEADLINE_LENGTH = 20


def parse_links(html: str, source: Source) -> List[RawItem]:
    """
    Extract anchor text and href pairs that look like article headlines.

    Hrefs are kept as written; the normalizer resolves them against the
    page URL.

    Raises:
        ParseError: if the page has no parseable content
    """
    soup = BeautifulSoup(html or "", "html.parser")
    if soup.find() is None:
        raise ParseError(f"No HTML content from {source.name}")

    fetched_at = utcnow()
    limit = source.max_items or DEFAULT_MAX_ITEMS
    seen = set()
    items = []

    for anchor in soup.find_all("a", href=True):
        if len(items) >= limit:
            break
        href = anchor["href"].strip()
        if not href or href.startswith(("#", "javascript:", "mailto:")):
            continue
        absolute = resolve_url(href, source.endpoint)
        if urlparse(absolute).scheme not in ("http", "https") or absolute in seen:
            continue
        title = anchor.get_text(" ", strip=True)
        if len(title) < MIN_HEADLINE_LENGTH:
            continue
        seen.add(absolute)
        items.append(
            RawItem(
                source_id=source.id,
                title=title,
                body=anchor.get("title", ""),
                url=href,
                published_at=None,
                fetched_at=fetched_at,
            )
        )

    logger.info(f"Extracted {len(items)} links from {source.name}")
    return items


def fetch_html(
    source: Source,
    timeout: float = 15,
    guard: Optional[QuotaGuard] = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> List[RawItem]:
    """Fetch a page and return its headline links as raw items."""
    logger.debug(f"Fetching HTML page: {source.name} from {source.endpoint}")
    response = http_get(source.endpoint, timeout=timeout, guard=guard, user_agent=user_agent)
    return parse_links(response.text, source)
