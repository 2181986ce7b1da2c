from __future__ import annotations

import argparse
import datetime
import sys
from pathlib import Path
from typing import Dict, List

from sqlalchemy import select

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import (  # noqa: E402
    SessionLocal,
    Worker,
    WorkerSessionLocal,
    init_database,
    list_active_workers,
)
from generator.api import distribute_for_date  # noqa: E402
from needs import save_station_needs  # noqa: E402
from policy import ensure_default_policy, load_active_policy, station_catalog  # noqa: E402
from snapshot import Slot  # noqa: E402
from store import AssignmentStore, PendingMoveRegistry  # noqa: E402
from validation import validate_day  # noqa: E402

DEMO_WORKERS = [
    ("Anna Berg", "Skift 1"),
    ("Bo Ek", "Skift 1"),
    ("Cecilia Lund", "Skift 1"),
    ("David Holm", "Skift 1"),
    ("Elin Sjö", "Skift 2"),
    ("Fredrik Ström", "Skift 2"),
    ("Greta Nyström", "Skift 2"),
    ("Hugo Falk", "Skift 2"),
    ("Ida Dahl", "Skift 1"),
    ("Jonas Vik", "Skift 2"),
]

DEMO_NEEDS: Dict[str, int] = {
    "Plock": 2,
    "Pack": 3,
    "Auto Pack": 1,
    "KM": 1,
    "Rep": 1,
}


def _seed_workers() -> List[int]:
    with WorkerSessionLocal() as worker_session:
        existing = worker_session.scalars(select(Worker.id)).first()
        if existing is None:
            for name, shift in DEMO_WORKERS:
                worker_session.add(Worker(name=name, shift=shift, is_active=True))
            worker_session.commit()
        return [worker["id"] for worker in list_active_workers(worker_session)]


def run_workflow(day: datetime.date, actor: str) -> None:
    ensure_default_policy(SessionLocal)
    worker_ids = _seed_workers()
    print(f"[workflow] {len(worker_ids)} active workers available.")

    with SessionLocal() as session:
        catalog = station_catalog(load_active_policy(session))
        save_station_needs(session, day, DEMO_NEEDS, catalog)
        result = distribute_for_date(session, worker_ids, day, actor, manual_text="Extern förstärkning")
        print(f"[workflow] Assigned {result['assigned']} workers for {day.isoformat()}.")
        for station, counts in result["stations"].items():
            if counts["needed"] or counts["filled"]:
                print(f"[workflow]   {station}: {counts['filled']}/{counts['needed']}")
        if result["unassigned"]:
            print(f"[workflow] Unassigned: {result['unassigned']}")

        store = AssignmentStore(session, actor=actor, pending=PendingMoveRegistry())
        snapshot = store.load(day)
        if snapshot.placements:
            first = snapshot.placements[0]
            target = Slot("Rep") if first.station != "Rep" else Slot("KM")
            outcome = store.propose(snapshot, first.worker_id, first.slot, target)
            if outcome.applied:
                print(f"[workflow] Moved worker {first.worker_id} to {target.station}.")
            else:
                for warning in outcome.pending.warnings:
                    print(f"[workflow][warning] {warning.message}")
                store.confirm(outcome.pending.token)
                print(f"[workflow] Confirmed move of worker {first.worker_id} to {target.station}.")

        report = validate_day(session, day)
    for issue in report["issues"]:
        print(f"[workflow][validation-error] {issue['message']}")
    for warning in report["warnings"]:
        print(f"[workflow][validation-warning] {warning['message']}")
    if report["issues"]:
        raise SystemExit(1)
    print("[workflow] Validation passed; assignments and history are in sync.")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Run an end-to-end smoke test that seeds a demo roster, saves station needs, "
            "distributes workers, applies one move and validates the day."
        )
    )
    parser.add_argument("--day", help="ISO date (YYYY-MM-DD) to plan. Defaults to today.")
    parser.add_argument("--actor", default="workflow_smoke", help="Audit trail actor name.")
    return parser.parse_args()


def main() -> None:
    init_database()
    args = parse_args()
    if args.day:
        try:
            day = datetime.date.fromisoformat(args.day)
        except ValueError as exc:
            raise SystemExit(f"Invalid --day value: {exc}") from exc
    else:
        day = datetime.date.today()
    print(f"[workflow] Target day: {day.isoformat()}")
    run_workflow(day, actor=args.actor)


if __name__ == "__main__":
    main()
