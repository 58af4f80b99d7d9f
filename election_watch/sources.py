"""Source registry: the configured set of content sources."""

import logging
from typing import Iterator, List, Optional

from .errors import ConfigError
from .models import Source

logger = logging.getLogger(__name__)

DEFAULT_SOURCES = [
    {
        "id": "gleaner-main",
        "name": "Jamaica Gleaner",
        "kind": "rss",
        "endpoint": "https://jamaica-gleaner.com/feed",
        "priority": 5,
        "topic_weight": 9,
    },
    {
        "id": "gleaner-politics",
        "name": "Jamaica Gleaner Politics",
        "kind": "rss",
        "endpoint": "https://jamaica-gleaner.com/section/politics/feed",
        "priority": 5,
        "topic_weight": 10,
    },
    {
        "id": "observer-main",
        "name": "Jamaica Observer",
        "kind": "rss",
        "endpoint": "https://www.jamaicaobserver.com/feed/",
        "priority": 5,
        "topic_weight": 9,
    },
    {
        "id": "observer-politics",
        "name": "Jamaica Observer Politics",
        "kind": "rss",
        "endpoint": "https://www.jamaicaobserver.com/category/politics/feed/",
        "priority": 5,
        "topic_weight": 10,
    },
    {
        "id": "nationwide-vote",
        "name": "Nationwide News Vote Coverage",
        "kind": "html",
        "endpoint": "https://nationwideradiojm.com/category/vote2020/",
        "priority": 4,
        "topic_weight": 10,
    },
    {
        "id": "nationwide-main",
        "name": "Nationwide News Network",
        "kind": "rss",
        "endpoint": "https://nationwideradiojm.com/feed/",
        "priority": 4,
        "topic_weight": 8,
    },
]


class SourceRegistry:
    """Immutable snapshot of sources, loaded once per run."""

    def __init__(self, sources: List[Source]):
        ids = [s.id for s in sources]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise ConfigError(f"Duplicate source ids: {', '.join(sorted(duplicates))}")
        self._sources = tuple(sources)

    @classmethod
    def from_config(cls, entries: Optional[List[dict]]) -> "SourceRegistry":
        """Build from the ``sources`` config list, or the defaults if absent."""
        if entries is None:
            entries = DEFAULT_SOURCES
        sources = []
        for entry in entries:
            try:
                sources.append(Source.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigError(f"Invalid source entry {entry!r}: {e}") from e
        logger.debug(f"Loaded {len(sources)} sources")
        return cls(sources)

    def active(self) -> List[Source]:
        """Active sources, highest priority first; ties keep config order."""
        return sorted(
            (s for s in self._sources if s.is_active),
            key=lambda s: s.priority,
            reverse=True,
        )

    def get(self, source_id: str) -> Optional[Source]:
        for source in self._sources:
            if source.id == source_id:
                return source
        return None

    def __iter__(self) -> Iterator[Source]:
        return iter(self._sources)

    def __len__(self) -> int:
        return len(self._sources)
