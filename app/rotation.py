"""Rotation rule: a worker may not go straight back to the station they last worked."""

from __future__ import annotations

from typing import Hashable, List, Mapping, Optional, Sequence


def can_assign(
    worker_id: Hashable,
    candidate_station: str,
    last_station_of: Mapping[Hashable, Optional[str]],
) -> bool:
    last = last_station_of.get(worker_id)
    if last is None:
        return True
    return last != candidate_station


def available_stations(
    worker_id: Hashable,
    all_stations: Sequence[str],
    last_station_of: Mapping[Hashable, Optional[str]],
) -> List[str]:
    if worker_id not in last_station_of:
        return list(all_stations)
    return [station for station in all_stations if can_assign(worker_id, station, last_station_of)]
