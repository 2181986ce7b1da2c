from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence


@dataclass(frozen=True)
class Station:
    name: str
    lanes: int = 0
    manual: bool = False

    @property
    def has_lanes(self) -> bool:
        return self.lanes > 0


def normalize_station(name: str) -> str:
    return (name or "").strip().lower()


def build_catalog(entries: Iterable[Dict[str, Any]]) -> List[Station]:
    """Turn policy station entries into ``Station`` values, keeping their order.

    Unnamed and duplicate entries are dropped; only the first manual station is
    honoured.
    """
    catalog: List[Station] = []
    seen = set()
    manual_taken = False
    for entry in entries or []:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("name") or "").strip()
        key = normalize_station(name)
        if not key or key in seen:
            continue
        try:
            lanes = max(0, int(entry.get("lanes") or 0))
        except (TypeError, ValueError):
            lanes = 0
        manual = bool(entry.get("manual")) and not manual_taken
        if manual:
            manual_taken = True
            lanes = 0
        catalog.append(Station(name=name, lanes=lanes, manual=manual))
        seen.add(key)
    return catalog


def find_station(catalog: Sequence[Station], name: str) -> Optional[Station]:
    key = normalize_station(name)
    for station in catalog:
        if normalize_station(station.name) == key:
            return station
    return None


def manual_station(catalog: Sequence[Station]) -> Optional[Station]:
    for station in catalog:
        if station.manual:
            return station
    return None


def station_names(catalog: Sequence[Station], *, include_manual: bool = True) -> List[str]:
    return [station.name for station in catalog if include_manual or not station.manual]


def require_worker_slot(catalog: Sequence[Station], name: str, lane: Optional[int]) -> Station:
    """Return the station for a worker placement, validating the lane against it."""
    station = find_station(catalog, name)
    if station is None:
        raise ValueError(f"Unknown station '{name}'.")
    if station.manual:
        raise ValueError(f"Station '{station.name}' takes free text, not workers.")
    if station.has_lanes:
        if lane is None:
            raise ValueError(f"Station '{station.name}' requires a lane between 1 and {station.lanes}.")
        if not isinstance(lane, int) or isinstance(lane, bool) or not 1 <= lane <= station.lanes:
            raise ValueError(f"Lane {lane} is outside 1-{station.lanes} for station '{station.name}'.")
    elif lane is not None:
        raise ValueError(f"Station '{station.name}' has no lanes.")
    return station
