from __future__ import annotations

import datetime
from typing import Dict, List, Mapping, Sequence

from database import get_station_needs, upsert_station_need
from stations import Station, find_station


class NeedsRegistry:
    """Required headcount per station for one date.

    Lane-bearing stations cannot need more workers than they have lanes; larger
    requests are capped at the lane count.
    """

    def __init__(self, day: datetime.date, catalog: Sequence[Station], needs: Mapping[str, int] | None = None) -> None:
        self.day = day
        self.catalog = list(catalog)
        self._needs: Dict[str, int] = {}
        for name, count in (needs or {}).items():
            station = find_station(self.catalog, name)
            if station is None or station.manual:
                continue
            self._needs[station.name] = self._bounded(station, count)

    @classmethod
    def load(cls, session, day: datetime.date, catalog: Sequence[Station]) -> "NeedsRegistry":
        return cls(day, catalog, get_station_needs(session, day))

    @staticmethod
    def _bounded(station: Station, count) -> int:
        try:
            value = max(0, int(count or 0))
        except (TypeError, ValueError):
            value = 0
        if station.has_lanes:
            value = min(value, station.lanes)
        return value

    def needed(self, station: str) -> int:
        return self._needs.get(station, 0)

    def capacity(self, station: str) -> int | None:
        """Lane count for lane-bearing stations, ``None`` for unbounded ones."""
        found = find_station(self.catalog, station)
        if found is None or not found.has_lanes:
            return None
        return found.lanes

    def as_dict(self) -> Dict[str, int]:
        return {station.name: self.needed(station.name) for station in self.catalog if not station.manual}

    def stations_by_need(self) -> List[str]:
        """Stations with a positive need, largest first; equal needs keep catalog order."""
        ordered = [station.name for station in self.catalog if not station.manual and self.needed(station.name) > 0]
        return sorted(ordered, key=lambda name: -self.needed(name))


def save_station_needs(
    session,
    day: datetime.date,
    needs: Mapping[str, int],
    catalog: Sequence[Station],
) -> NeedsRegistry:
    """Upsert a need row for every worker station; stations left out are saved as zero."""
    unknown = [name for name in needs if find_station(catalog, name) is None]
    if unknown:
        raise ValueError(f"Unknown station(s): {', '.join(sorted(unknown))}.")
    normalized = {}
    for name, count in needs.items():
        station = find_station(catalog, name)
        if int(count or 0) < 0:
            raise ValueError(f"Need for '{station.name}' must be zero or greater.")
        normalized[station.name] = count
    registry = NeedsRegistry(day, catalog, normalized)
    for station in catalog:
        if station.manual:
            continue
        upsert_station_need(session, station.name, day, registry.needed(station.name))
    return registry
