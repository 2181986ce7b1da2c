from __future__ import annotations

import datetime
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from stations import Station


@dataclass(frozen=True)
class Slot:
    station: str
    lane: Optional[int] = None


@dataclass(frozen=True)
class Placement:
    worker_id: int
    station: str
    lane: Optional[int] = None

    @property
    def slot(self) -> Slot:
        return Slot(self.station, self.lane)


@dataclass(frozen=True)
class AssignmentSnapshot:
    """One day's assignments as an immutable value.

    Placements keep insertion order. ``manual_text`` is the free-text entry of
    the manual station, if any.
    """

    date: datetime.date
    placements: Tuple[Placement, ...] = ()
    manual_text: Optional[str] = None
    unassigned: Tuple[int, ...] = field(default=(), compare=False)

    def worker_ids(self) -> List[int]:
        return [placement.worker_id for placement in self.placements]

    def slots_of(self, worker_id: int) -> List[Slot]:
        return [placement.slot for placement in self.placements if placement.worker_id == worker_id]

    def by_station(self) -> Dict[str, List[int]]:
        grouped: Dict[str, List[int]] = {}
        for placement in self.placements:
            grouped.setdefault(placement.station, []).append(placement.worker_id)
        return grouped

    def lanes_of(self, station: str) -> Dict[int, List[int]]:
        lanes: Dict[int, List[int]] = {}
        for placement in self.placements:
            if placement.station == station and placement.lane is not None:
                lanes.setdefault(placement.lane, []).append(placement.worker_id)
        return lanes

    def count_at(self, station: str) -> int:
        return sum(1 for placement in self.placements if placement.station == station)

    def with_move(self, worker_id: int, source: Slot, target: Slot) -> "AssignmentSnapshot":
        """Return a copy with one ``source`` occurrence of the worker moved to ``target``."""
        if source == target:
            return self
        placements = list(self.placements)
        for index, placement in enumerate(placements):
            if placement.worker_id == worker_id and placement.slot == source:
                del placements[index]
                break
        else:
            raise ValueError(
                f"Worker {worker_id} is not placed at {source.station}"
                + (f" lane {source.lane}" if source.lane is not None else "")
                + " in this snapshot."
            )
        placements.append(Placement(worker_id, target.station, target.lane))
        return replace(self, placements=tuple(placements))


def fill_summary(
    snapshot: AssignmentSnapshot,
    needs: Dict[str, int],
    catalog: Sequence[Station],
) -> Dict[str, Dict[str, int]]:
    """Return ``{station: {"filled": n, "needed": m}}`` for every worker station.

    Lane-bearing stations count occupied lanes rather than heads, so a lane
    shared by two workers fills one position.
    """
    summary: Dict[str, Dict[str, int]] = {}
    for station in catalog:
        if station.manual:
            continue
        if station.has_lanes:
            filled = len(snapshot.lanes_of(station.name))
        else:
            filled = snapshot.count_at(station.name)
        summary[station.name] = {"filled": filled, "needed": int(needs.get(station.name, 0) or 0)}
    return summary


def snapshot_from_rows(
    date: datetime.date,
    rows: Iterable,
    *,
    manual_station: Optional[str] = None,
) -> AssignmentSnapshot:
    placements: List[Placement] = []
    manual_text: Optional[str] = None
    for row in rows:
        if row.worker_id is None:
            if manual_station is None or row.station == manual_station:
                manual_text = row.label or None
            continue
        placements.append(Placement(row.worker_id, row.station, row.lane))
    return AssignmentSnapshot(date=date, placements=tuple(placements), manual_text=manual_text)


def snapshot_to_dict(snapshot: AssignmentSnapshot, names: Optional[Dict[int, str]] = None) -> Dict:
    names = names or {}
    return {
        "date": snapshot.date.isoformat(),
        "placements": [
            {
                "worker_id": placement.worker_id,
                "name": names.get(placement.worker_id),
                "station": placement.station,
                "lane": placement.lane,
            }
            for placement in snapshot.placements
        ],
        "manual_text": snapshot.manual_text,
        "unassigned": list(snapshot.unassigned),
    }
