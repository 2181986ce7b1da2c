from __future__ import annotations

import datetime
import logging
from typing import Dict, Optional, Sequence

from .engine import AssignmentPlanner, SelectionError
from database import (
    delete_assignments,
    delete_history_for_date,
    insert_assignment,
    insert_history,
    planning_transaction,
    record_audit_log,
)
from history import histories_for, window_start_for
from needs import NeedsRegistry
from policy import history_window_months, load_active_policy, station_catalog
from snapshot import AssignmentSnapshot, fill_summary

logger = logging.getLogger(__name__)


def distribute_for_date(
    session,
    selected_worker_ids: Sequence[int],
    day: datetime.date,
    actor: str = "system",
    *,
    manual_text: Optional[str] = None,
    policy: Optional[Dict] = None,
) -> Dict:
    """Plan ``day`` for the selected workers and replace its stored assignments.

    Raises ``SelectionError`` before touching the database when nothing is
    selected. The assignment rows and their ledger rows are written in a single
    transaction.
    """
    if day is None:
        raise ValueError("day is required.")
    if not selected_worker_ids:
        raise SelectionError("Select at least one worker before distributing.")
    policy = policy if policy is not None else load_active_policy(session)
    catalog = station_catalog(policy)
    needs = NeedsRegistry.load(session, day, catalog)
    window_start = window_start_for(day, history_window_months(policy))
    # The day being replanned is excluded so a rerun ranks on prior days only.
    histories = histories_for(session, selected_worker_ids, window_start, until=day)

    planner = AssignmentPlanner(catalog)
    snapshot = planner.distribute(selected_worker_ids, needs, histories, manual_text, day=day)
    commit_snapshot(session, snapshot, manual_station=planner.manual.name if planner.manual else None)

    record_audit_log(
        session,
        user_id=actor or "system",
        action="DISTRIBUTE",
        payload={
            "date": day.isoformat(),
            "selected": len(set(selected_worker_ids)),
            "assigned": len(snapshot.placements),
            "shortages": planner.shortages(),
        },
    )
    logger.info(
        "Distributed %d of %d workers for %s", len(snapshot.placements), len(set(selected_worker_ids)), day
    )
    return {
        "date": day.isoformat(),
        "snapshot": snapshot,
        "assigned": len(snapshot.placements),
        "unassigned": list(snapshot.unassigned),
        "shortages": planner.shortages(),
        "stations": fill_summary(snapshot, needs.as_dict(), catalog),
    }


def commit_snapshot(session, snapshot: AssignmentSnapshot, *, manual_station: Optional[str]) -> None:
    """Replace the day's assignment and ledger rows with ``snapshot``."""
    with planning_transaction(session, snapshot.date, "Distribution"):
        delete_assignments(session, snapshot.date)
        delete_history_for_date(session, snapshot.date)
        for placement in snapshot.placements:
            insert_assignment(session, placement.worker_id, placement.station, placement.lane, snapshot.date)
            insert_history(session, placement.worker_id, placement.station, placement.lane, snapshot.date)
        if snapshot.manual_text and manual_station:
            insert_assignment(session, None, manual_station, None, snapshot.date, label=snapshot.manual_text)

