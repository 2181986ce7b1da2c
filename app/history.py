from __future__ import annotations

import calendar
import datetime
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import func, select

from database import WorkHistory, query_history


def window_start_for(day: datetime.date, months: int) -> datetime.date:
    """Return ``day`` minus ``months`` calendar months, clamping to the month's last day."""
    if isinstance(day, datetime.datetime):
        day = day.date()
    month_index = day.year * 12 + (day.month - 1) - int(months)
    year, month = divmod(month_index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return datetime.date(year, month, min(day.day, last_day))


def history_for(
    session,
    worker_id: int,
    window_start: datetime.date,
    *,
    until: Optional[datetime.date] = None,
) -> Dict[str, int]:
    """Count the worker's ledger rows per station since ``window_start``.

    Workers without rows get an empty dict; a missing station means zero visits.
    """
    counts: Dict[str, int] = defaultdict(int)
    for station, _lane, _work_date in query_history(session, worker_id, window_start, until=until):
        counts[station] += 1
    return dict(counts)


def histories_for(
    session,
    worker_ids: Iterable[int],
    window_start: datetime.date,
    *,
    until: Optional[datetime.date] = None,
) -> Dict[int, Dict[str, int]]:
    """Return visit counts for every requested worker from one grouped query."""
    ids: List[int] = list(dict.fromkeys(worker_ids))
    histories: Dict[int, Dict[str, int]] = {worker_id: {} for worker_id in ids}
    if not ids:
        return histories
    stmt = (
        select(WorkHistory.worker_id, WorkHistory.station, func.count(WorkHistory.id))
        .where(WorkHistory.worker_id.in_(ids), WorkHistory.work_date >= window_start)
        .group_by(WorkHistory.worker_id, WorkHistory.station)
    )
    if until is not None:
        stmt = stmt.where(WorkHistory.work_date < until)
    for worker_id, station, count in session.execute(stmt):
        histories[worker_id][station] = int(count)
    return histories


def least_visited_stations(counts: Mapping[str, int], stations: Sequence[str]) -> List[str]:
    """Return every station in ``stations`` tied for the lowest visit count."""
    if not stations:
        return []
    lowest = min(int(counts.get(station, 0) or 0) for station in stations)
    return [station for station in stations if int(counts.get(station, 0) or 0) == lowest]


def last_stations(
    session,
    worker_ids: Iterable[int],
    before: datetime.date,
) -> Dict[int, Optional[str]]:
    """Map each worker to the station of their latest ledger row before ``before``."""
    ids: List[int] = list(dict.fromkeys(worker_ids))
    result: Dict[int, Optional[str]] = {worker_id: None for worker_id in ids}
    if not ids:
        return result
    latest = (
        select(WorkHistory.worker_id, func.max(WorkHistory.work_date).label("last_date"))
        .where(WorkHistory.worker_id.in_(ids), WorkHistory.work_date < before)
        .group_by(WorkHistory.worker_id)
        .subquery()
    )
    stmt = (
        select(WorkHistory.worker_id, WorkHistory.station)
        .join(
            latest,
            (WorkHistory.worker_id == latest.c.worker_id) & (WorkHistory.work_date == latest.c.last_date),
        )
        .order_by(WorkHistory.worker_id, WorkHistory.id)
    )
    # Several rows on the last day: the most recently written one wins.
    for worker_id, station in session.execute(stmt):
        result[worker_id] = station
    return result
