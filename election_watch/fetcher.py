"""Fetch all active sources with bounded parallelism."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Tuple

from .errors import ParseError, SourceFetchError
from .fetchers import html, rss, search
from .fetchers.http import DEFAULT_USER_AGENT
from .models import RawItem, Source, SourceError
from .quota import QuotaGuard

logger = logging.getLogger(__name__)


class Fetcher:
    """Dispatches each source to the fetcher for its kind."""

    def __init__(
        self,
        workers: int = 6,
        timeout: float = 10,
        html_timeout: float = 15,
        guard: Optional[QuotaGuard] = None,
        credentials: Optional[Dict[str, str]] = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.workers = workers
        self.timeout = timeout
        self.html_timeout = html_timeout
        self.guard = guard
        self.credentials = credentials or {}
        self.user_agent = user_agent

    def fetch(self, source: Source, keywords: List[str]) -> List[RawItem]:
        """
        Fetch one source.

        Raises:
            SourceFetchError: network, HTTP status or missing credentials
            ParseError: malformed payload
        """
        if source.kind == "rss":
            return rss.fetch_rss(source, self.timeout, self.guard, self.user_agent)
        if source.kind == "html":
            return html.fetch_html(source, self.html_timeout, self.guard, self.user_agent)
        if source.provider == "newsapi":
            return search.fetch_news_search(
                source, keywords, self.credentials.get("newsapi", ""),
                self.timeout, self.guard, self.user_agent,
            )
        return search.fetch_social_search(
            source, keywords, self.credentials.get("x", ""),
            self.timeout, self.guard, self.user_agent,
        )

    def fetch_all(
        self,
        sources: List[Source],
        keywords: List[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[List[RawItem], List[SourceError]]:
        """
        Fetch every source; a failing source contributes zero items.

        Cancellation is checked before each source starts, never mid-fetch.
        Items come back grouped in ``sources`` order regardless of which
        fetch finished first.
        """
        results: Dict[str, List[RawItem]] = {}
        errors: List[SourceError] = []

        def _fetch_one(source: Source) -> Optional[List[RawItem]]:
            if cancel_event is not None and cancel_event.is_set():
                return None
            return self.fetch(source, keywords)

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = {executor.submit(_fetch_one, s): s for s in sources}
            for future in as_completed(futures):
                source = futures[future]
                try:
                    items = future.result()
                except (SourceFetchError, ParseError) as e:
                    logger.error(f"Error fetching {source.name}: {e}")
                    errors.append(SourceError(source.id, type(e).__name__, str(e)))
                    continue
                except Exception as e:
                    logger.exception(f"Unexpected error fetching {source.name}: {e}")
                    errors.append(SourceError(source.id, type(e).__name__, str(e)))
                    continue
                if items is None:
                    logger.info(f"Skipped {source.name}: run cancelled")
                    continue
                results[source.id] = items
                logger.info(f"Fetched {len(items)} items from {source.name}")

        ordered = [item for s in sources for item in results.get(s.id, [])]
        return ordered, errors
