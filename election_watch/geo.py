"""Map item text to a parish, optionally via a known locality or polling station."""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .models import PollingStation
from .taxonomy import PARISHES, LOCALITIES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeoUnit:
    name: str
    locality: Optional[str] = None
    station: Optional[str] = None  # polling station code


def name_variants(name: str) -> List[str]:
    """Spellings of a place name: "St. Ann" also matches "St Ann" and "Saint Ann"."""
    variants = [name]
    if name.startswith("St. "):
        rest = name[len("St. "):]
        variants += [f"St {rest}", f"Saint {rest}"]
    return variants


class GeoResolver:
    """
    Resolves the first place name mentioned in text to a geo unit.

    Three tiers share one lookup: parishes, localities (mapped to their
    parish) and registered polling stations (mapped to their parish and
    carrying the station code). The earliest mention wins; at the same
    position the longest name wins, so "Kingston College" beats "Kingston".
    """

    def __init__(
        self,
        regions: Optional[List[str]] = None,
        localities: Optional[Dict[str, str]] = None,
        stations: Optional[List[PollingStation]] = None,
    ):
        self.regions = list(regions if regions is not None else PARISHES)
        self.localities = dict(localities if localities is not None else LOCALITIES)
        self.stations = list(stations or [])
        self._lookup: Dict[str, Tuple[str, Optional[str], Optional[str]]] = {}
        for station in self.stations:
            for variant in name_variants(station.name):
                self._lookup[variant.lower()] = (station.parish, None, station.code)
        for region in self.regions:
            for variant in name_variants(region):
                self._lookup.setdefault(variant.lower(), (region, None, None))
        for locality, parent in self.localities.items():
            for variant in name_variants(locality):
                self._lookup.setdefault(variant.lower(), (parent, locality, None))
        # Longest names first so "St. Ann's Bay" wins over "St. Ann"
        names = sorted(self._lookup, key=len, reverse=True)
        self._pattern = re.compile(
            r"(?<!\w)(" + "|".join(re.escape(n) for n in names) + r")(?!\w)"
        ) if names else None
        if self.stations:
            logger.debug(f"Geo resolver loaded {len(self.stations)} polling stations")

    def resolve(self, text: str) -> Optional[GeoUnit]:
        """Return the unit for the earliest place name in ``text``, or None."""
        if not text or self._pattern is None:
            return None
        match = self._pattern.search(text.lower())
        if not match:
            return None
        region, locality, station = self._lookup[match.group(1)]
        return GeoUnit(name=region, locality=locality, station=station)

    def mentions(self, text: str, regions: Optional[List[str]] = None) -> List[str]:
        """Distinct region names mentioned directly in ``text``."""
        if not text:
            return []
        lowered = text.lower()
        found = []
        for region in regions if regions is not None else self.regions:
            for variant in name_variants(region):
                if re.search(r"(?<!\w)" + re.escape(variant.lower()) + r"(?!\w)", lowered):
                    found.append(region)
                    break
        return found

    def is_local(self, text: str) -> bool:
        return self.resolve(text) is not None
