from __future__ import annotations

import datetime
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from database import DailyAssignment, WorkHistory, get_assignments, get_history_for_date, get_station_needs
from needs import NeedsRegistry
from policy import load_active_policy, station_catalog
from stations import Station, find_station


def validate_day(session, day: datetime.date, *, policy: Optional[Dict] = None) -> Dict[str, Any]:
    """Return validation findings for the requested day."""
    policy = policy if policy is not None else load_active_policy(session)
    catalog = station_catalog(policy)
    assignments = get_assignments(session, day)
    history = get_history_for_date(session, day)
    needs = NeedsRegistry(day, catalog, get_station_needs(session, day))

    issues: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []
    issues.extend(_ledger_mirror_issues(assignments, history))
    issues.extend(_duplicate_worker_issues(assignments))
    issues.extend(_slot_issues(assignments, catalog))
    warnings.extend(_staffing_warnings(assignments, needs, catalog))
    checks = _build_validation_checklist(issues)
    return {
        "date": day.isoformat(),
        "checks": checks,
        "issues": issues,
        "warnings": warnings,
    }


def _slot_key(worker_id: int, station: str, lane: Optional[int]) -> tuple:
    return (worker_id, station, lane)


def _ledger_mirror_issues(
    assignments: Sequence[DailyAssignment],
    history: Sequence[WorkHistory],
) -> List[Dict[str, Any]]:
    assigned = Counter(
        _slot_key(row.worker_id, row.station, row.lane) for row in assignments if row.worker_id is not None
    )
    recorded = Counter(_slot_key(row.worker_id, row.station, row.lane) for row in history)
    issues: List[Dict[str, Any]] = []
    for key, count in sorted((assigned - recorded).items(), key=lambda item: repr(item[0])):
        worker_id, station, lane = key
        issues.append(
            {
                "type": "ledger_missing",
                "severity": "error",
                "worker_id": worker_id,
                "station": station,
                "lane": lane,
                "count": count,
                "message": f"Worker {worker_id} is assigned to {station} without a matching history row.",
            }
        )
    for key, count in sorted((recorded - assigned).items(), key=lambda item: repr(item[0])):
        worker_id, station, lane = key
        issues.append(
            {
                "type": "ledger_orphan",
                "severity": "error",
                "worker_id": worker_id,
                "station": station,
                "lane": lane,
                "count": count,
                "message": f"History records worker {worker_id} at {station} but no assignment exists.",
            }
        )
    return issues


def _duplicate_worker_issues(assignments: Sequence[DailyAssignment]) -> List[Dict[str, Any]]:
    counts = Counter(row.worker_id for row in assignments if row.worker_id is not None)
    issues = []
    for worker_id, count in sorted(counts.items()):
        if count <= 1:
            continue
        stations = sorted({row.station for row in assignments if row.worker_id == worker_id})
        issues.append(
            {
                "type": "duplicate_worker",
                "severity": "error",
                "worker_id": worker_id,
                "stations": stations,
                "message": f"Worker {worker_id} is assigned {count} times on the same day.",
            }
        )
    return issues


def _slot_issues(assignments: Sequence[DailyAssignment], catalog: Sequence[Station]) -> List[Dict[str, Any]]:
    issues = []
    for row in assignments:
        station = find_station(catalog, row.station)
        if station is None:
            issues.append(
                {
                    "type": "unknown_station",
                    "severity": "error",
                    "worker_id": row.worker_id,
                    "station": row.station,
                    "message": f"Station '{row.station}' is not in the station catalog.",
                }
            )
            continue
        if row.worker_id is None:
            if not station.manual:
                issues.append(
                    {
                        "type": "missing_worker",
                        "severity": "error",
                        "station": row.station,
                        "message": f"Assignment at {row.station} has no worker.",
                    }
                )
            continue
        if station.manual:
            issues.append(
                {
                    "type": "worker_on_manual_station",
                    "severity": "error",
                    "worker_id": row.worker_id,
                    "station": row.station,
                    "message": f"{row.station} takes free text only.",
                }
            )
        elif station.has_lanes and (row.lane is None or not 1 <= row.lane <= station.lanes):
            issues.append(
                {
                    "type": "invalid_lane",
                    "severity": "error",
                    "worker_id": row.worker_id,
                    "station": row.station,
                    "lane": row.lane,
                    "message": f"Lane {row.lane} is not valid for {row.station} (1-{station.lanes}).",
                }
            )
        elif not station.has_lanes and row.lane is not None:
            issues.append(
                {
                    "type": "invalid_lane",
                    "severity": "error",
                    "worker_id": row.worker_id,
                    "station": row.station,
                    "lane": row.lane,
                    "message": f"{row.station} has no lanes.",
                }
            )
    return issues


def _staffing_warnings(
    assignments: Sequence[DailyAssignment],
    needs: NeedsRegistry,
    catalog: Sequence[Station],
) -> List[Dict[str, Any]]:
    warnings = []
    for station in catalog:
        if station.manual:
            continue
        rows = [row for row in assignments if row.station == station.name and row.worker_id is not None]
        if station.has_lanes:
            filled = len({row.lane for row in rows if row.lane is not None})
        else:
            filled = len(rows)
        needed = needs.needed(station.name)
        if filled < needed:
            warnings.append(
                {
                    "type": "understaffed",
                    "station": station.name,
                    "filled": filled,
                    "needed": needed,
                    "message": f"{station.name} has {filled} of {needed} positions filled.",
                }
            )
        elif filled > needed:
            warnings.append(
                {
                    "type": "overstaffed",
                    "station": station.name,
                    "filled": filled,
                    "needed": needed,
                    "message": f"{station.name} has {filled} positions filled but needs {needed}.",
                }
            )
    return warnings


def _build_validation_checklist(issues: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    def _status(types: set) -> str:
        return "fail" if any(issue["type"] in types for issue in issues) else "pass"

    return [
        {
            "label": "History mirrors assignments?",
            "status": _status({"ledger_missing", "ledger_orphan"}),
        },
        {
            "label": "Each worker placed once?",
            "status": _status({"duplicate_worker"}),
        },
        {
            "label": "Stations and lanes valid?",
            "status": _status({"unknown_station", "missing_worker", "worker_on_manual_station", "invalid_lane"}),
        },
    ]
