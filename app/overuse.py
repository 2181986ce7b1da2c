from __future__ import annotations

from dataclasses import dataclass
from typing import Hashable, Mapping

from policy_defaults import DEFAULT_OVERUSE


@dataclass(frozen=True)
class OveruseResult:
    worker_id: Hashable
    station: str
    count: int
    average: float
    threshold: float
    warn: bool

    @property
    def ok(self) -> bool:
        return not self.warn

    def message(self) -> str:
        if not self.warn:
            return ""
        return (
            f"Worker has been at {self.station} {self.count} times in the history window "
            f"(threshold {self.threshold:.1f})."
        )


def evaluate(
    worker_id: Hashable,
    to_station: str,
    history_map: Mapping[str, int],
    *,
    ratio: float = DEFAULT_OVERUSE["ratio"],
    min_count: int = DEFAULT_OVERUSE["min_count"],
) -> OveruseResult:
    """Flag a move to ``to_station`` when the worker is disproportionately often there.

    Stations never visited are left out of the average rather than counted as
    zero. The result is advisory; callers decide whether to ask for confirmation.
    """
    entries = [int(value) for value in history_map.values() if value]
    average = sum(entries) / len(entries) if entries else 0.0
    count = int(history_map.get(to_station, 0) or 0)
    threshold = ratio * average
    warn = count > threshold and count > min_count
    return OveruseResult(
        worker_id=worker_id,
        station=to_station,
        count=count,
        average=average,
        threshold=threshold,
        warn=warn,
    )
