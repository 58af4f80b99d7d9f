"""Text cleanup and canonicalisation of fetched items."""

import logging
import re
from dataclasses import replace
from datetime import datetime
from functools import lru_cache
from typing import List, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup
from dateutil import parser as date_parser

from .models import RawItem, as_utc

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_QUOTES = str.maketrans({"‘": "'", "’": "'", "“": '"', "”": '"'})


def clean_text(value: Optional[str]) -> str:
    """Strip HTML tags and entities, then collapse whitespace."""
    if not value:
        return ""
    text = value
    if "<" in text or "&" in text:
        soup = BeautifulSoup(text, "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        text = soup.get_text(" ")
    text = text.translate(_QUOTES).replace("\xa0", " ")
    return _WHITESPACE.sub(" ", text).strip()


def parse_date(date_str: Optional[str]) -> Optional[datetime]:
    """Parse a date string to an aware UTC datetime, or None if unusable."""
    if not date_str:
        return None
    try:
        return as_utc(date_parser.parse(date_str))
    except (ValueError, TypeError, OverflowError) as e:
        logger.warning(f"Failed to parse date '{date_str}': {e}")
        return None


def resolve_url(href: str, base_url: Optional[str] = None) -> str:
    """Resolve absolute, protocol-relative and path-relative links against a base."""
    href = (href or "").strip()
    if not base_url or urlparse(href).scheme:
        return href
    return urljoin(base_url, href)


@lru_cache(maxsize=2048)
def _term_pattern(term: str) -> "re.Pattern":
    # Whole-word match with an optional plural "s"
    return re.compile(r"(?<!\w)" + re.escape(term.lower()) + r"s?(?!\w)")


def find_terms(text: str, terms: List[str]) -> List[str]:
    """Return the distinct terms present in ``text`` as whole words, in list order."""
    lowered = text.lower()
    found = []
    for term in terms:
        if term and term not in found and _term_pattern(term).search(lowered):
            found.append(term)
    return found


def normalize(raw: RawItem, source_kind: str, base_url: Optional[str] = None) -> RawItem:
    """
    Convert a fetched item into canonical form.

    Title and body always pass through the markup stripper. HTML links are
    resolved against the page they came from, and a missing publish date
    falls back to the fetch time.
    """
    url = raw.url
    if source_kind == "html":
        url = resolve_url(url, base_url)
    return replace(
        raw,
        title=clean_text(raw.title),
        body=clean_text(raw.body),
        url=url.strip(),
        published_at=raw.published_at or raw.fetched_at,
    )
