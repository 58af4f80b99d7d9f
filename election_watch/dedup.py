"""Best-effort duplicate detection by content fingerprint."""

import logging
import re
from dataclasses import dataclass
from typing import List

from .models import RawItem

logger = logging.getLogger(__name__)

FINGERPRINT_LENGTH = 50
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def fingerprint(title: str, body: str) -> str:
    """Lower-cased, punctuation- and space-free prefix of title plus body."""
    key = _NON_ALNUM.sub("", f"{title} {body}".lower())
    return key[:FINGERPRINT_LENGTH]


@dataclass
class Candidate:
    """A normalized item with its fingerprint and duplicate flag."""

    item: RawItem
    fingerprint: str
    is_duplicate: bool = False


def dedupe(items: List[RawItem]) -> List[Candidate]:
    """
    Mark duplicates without dropping them.

    The first item seen in scan order is canonical; later items with the
    same fingerprint are flagged so the caller can record them as
    occurrences.
    """
    seen = set()
    candidates = []
    for item in items:
        key = fingerprint(item.title, item.body)
        candidate = Candidate(item=item, fingerprint=key, is_duplicate=key in seen)
        if candidate.is_duplicate:
            logger.debug(f"Duplicate in run: {item.title[:50]}... ({item.source_id})")
        seen.add(key)
        candidates.append(candidate)
    return candidates
