from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from needs import NeedsRegistry
from snapshot import AssignmentSnapshot, Placement
from stations import Station, find_station, manual_station


class SelectionError(ValueError):
    """No workers were selected for distribution."""


@dataclass
class StationPick:
    station: str
    needed: int
    picked: List[int] = field(default_factory=list)

    @property
    def short(self) -> int:
        return max(0, self.needed - len(self.picked))


class AssignmentPlanner:
    """Greedy one-day distribution of selected workers over stations.

    Stations are filled largest need first; within a station the workers who
    have been there least often in the history window go first. Stable sorting
    keeps ties deterministic: equal needs follow catalog order, equal counts
    follow selection order.
    """

    def __init__(self, catalog: Sequence[Station]) -> None:
        self.catalog = list(catalog)
        self.manual = manual_station(self.catalog)
        self.picks: List[StationPick] = []

    def distribute(
        self,
        selected_worker_ids: Sequence[int],
        needs: NeedsRegistry,
        histories: Mapping[int, Mapping[str, int]],
        manual_text: Optional[str] = None,
        *,
        day: Optional[datetime.date] = None,
    ) -> AssignmentSnapshot:
        if not selected_worker_ids:
            raise SelectionError("Select at least one worker before distributing.")
        pool: List[int] = list(dict.fromkeys(selected_worker_ids))
        placements: List[Placement] = []
        self.picks = []

        for station_name in needs.stations_by_need():
            station = find_station(self.catalog, station_name)
            needed = needs.needed(station_name)
            ranked = sorted(pool, key=lambda worker_id: self._visits(histories, worker_id, station_name))
            chosen = ranked[:needed]
            for index, worker_id in enumerate(chosen):
                lane = index + 1 if station is not None and station.has_lanes else None
                placements.append(Placement(worker_id, station_name, lane))
            chosen_set = set(chosen)
            pool = [worker_id for worker_id in pool if worker_id not in chosen_set]
            self.picks.append(StationPick(station=station_name, needed=needed, picked=chosen))

        text = (manual_text or "").strip()
        return AssignmentSnapshot(
            date=day or needs.day,
            placements=tuple(placements),
            manual_text=text if text and self.manual is not None else None,
            unassigned=tuple(pool),
        )

    @staticmethod
    def _visits(histories: Mapping[int, Mapping[str, int]], worker_id: int, station: str) -> int:
        return int((histories.get(worker_id) or {}).get(station, 0) or 0)

    def shortages(self) -> Dict[str, int]:
        return {pick.station: pick.short for pick in self.picks if pick.short}
