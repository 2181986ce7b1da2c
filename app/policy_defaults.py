from __future__ import annotations

import copy
from typing import Any, Dict, List


def _station_config(name: str, *, lanes: int = 0, manual: bool = False) -> Dict[str, Any]:
    return {
        "name": name,
        "lanes": max(0, int(lanes)),
        "manual": bool(manual),
    }


DEFAULT_STATIONS: List[Dict[str, Any]] = [
    _station_config("Plock"),
    _station_config("Auto Plock", lanes=6),
    _station_config("Pack", lanes=12),
    _station_config("Auto Pack", lanes=6),
    _station_config("KM"),
    _station_config("Decating"),
    _station_config("In/Ut"),
    _station_config("Rep"),
    _station_config("FL", manual=True),
]

DEFAULT_HISTORY_WINDOW_MONTHS = 6

# A move warns when the target count exceeds ratio x the worker's mean visit
# count over visited stations and also exceeds min_count.
DEFAULT_OVERUSE: Dict[str, float | int] = {
    "ratio": 1.5,
    "min_count": 5,
}

DEFAULT_POLICY: Dict[str, Any] = {
    "name": "Default Policy",
    "history_window_months": DEFAULT_HISTORY_WINDOW_MONTHS,
    "overuse": DEFAULT_OVERUSE,
    "stations": DEFAULT_STATIONS,
}


def default_policy_payload() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_POLICY)
