from __future__ import annotations

import datetime
import sys
import unittest
from pathlib import Path
from unittest import mock

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import (  # noqa: E402
    AuditLog,
    Base,
    DailyAssignment,
    InconsistentStateError,
    WorkHistory,
    get_assignments,
    get_history_for_date,
    insert_assignment,
    insert_history,
)
from snapshot import AssignmentSnapshot, Placement, Slot  # noqa: E402
import store as store_module  # noqa: E402
from store import AssignmentStore, PendingConfirmation, PendingMoveRegistry  # noqa: E402

DAY = datetime.date(2024, 6, 10)

POLICY = {
    "history_window_months": 6,
    "overuse": {"ratio": 1.5, "min_count": 5},
    "stations": [
        {"name": "A"},
        {"name": "B", "lanes": 3},
        {"name": "C"},
        {"name": "FL", "manual": True},
    ],
}


class AssignmentStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)()
        self.pending = PendingMoveRegistry()
        self.store = AssignmentStore(self.session, POLICY, actor="tests", pending=self.pending)

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def _place(self, worker_id: int, station: str, lane=None, day: datetime.date = DAY) -> None:
        insert_assignment(self.session, worker_id, station, lane, day)
        insert_history(self.session, worker_id, station, lane, day)
        self.session.commit()

    def _past(self, worker_id: int, station: str, days: int, lane=None) -> None:
        for offset in range(1, days + 1):
            insert_history(self.session, worker_id, station, lane, DAY - datetime.timedelta(days=offset + 1))
        self.session.commit()

    def _rows(self, model, worker_id: int):
        if model is DailyAssignment:
            rows = get_assignments(self.session, DAY)
        else:
            rows = get_history_for_date(self.session, DAY)
        return sorted((row.station, row.lane) for row in rows if row.worker_id == worker_id)

    def _actions(self):
        return self.session.scalars(select(AuditLog.action).order_by(AuditLog.id)).all()

    def test_same_slot_is_a_no_op(self) -> None:
        self._place(1, "A")
        snapshot = self.store.load(DAY)

        result = self.store.move(snapshot, 1, Slot("A"), Slot("A"))

        self.assertIs(result, snapshot)
        self.assertEqual(self._actions(), [])

    def test_move_updates_assignment_and_history(self) -> None:
        self._place(1, "A")
        snapshot = self.store.load(DAY)

        updated = self.store.move(snapshot, 1, Slot("A"), Slot("c"))

        self.assertEqual(updated.slots_of(1), [Slot("C")])
        self.assertEqual(snapshot.slots_of(1), [Slot("A")])
        self.assertEqual(self._rows(DailyAssignment, 1), [("C", None)])
        self.assertEqual(self._rows(WorkHistory, 1), [("C", None)])
        self.assertEqual(self._actions(), ["MOVE"])

    def test_overused_target_waits_for_confirmation(self) -> None:
        self._past(1, "B", 10, lane=1)
        self._past(1, "A", 2)
        self._place(1, "A")
        snapshot = self.store.load(DAY)

        result = self.store.propose(snapshot, 1, Slot("A"), Slot("B", 2))

        self.assertFalse(result.applied)
        self.assertEqual([warning.kind for warning in result.pending.warnings], ["overuse"])
        self.assertIn(result.pending.token, self.pending)
        self.assertEqual(self._rows(DailyAssignment, 1), [("A", None)])

        updated = self.store.confirm(result.pending.token)

        self.assertEqual(updated.slots_of(1), [Slot("B", 2)])
        self.assertEqual(self._rows(DailyAssignment, 1), [("B", 2)])
        self.assertEqual(self._rows(WorkHistory, 1), [("B", 2)])
        self.assertEqual(len(self.pending), 0)
        self.assertEqual(self._actions(), ["MOVE_PENDING", "MOVE", "MOVE_CONFIRM"])

    def test_cancel_leaves_state_untouched(self) -> None:
        self._past(1, "C", 12)
        self._past(1, "A", 1)
        self._place(1, "A")
        snapshot = self.store.load(DAY)

        result = self.store.propose(snapshot, 1, Slot("A"), Slot("C"))
        cancelled = self.store.cancel(result.pending.token)

        self.assertEqual(cancelled.target, Slot("C"))
        self.assertEqual(self._rows(DailyAssignment, 1), [("A", None)])
        self.assertEqual(self._rows(WorkHistory, 1), [("A", None)])
        self.assertEqual(len(self.pending), 0)
        with self.assertRaises(ValueError):
            self.store.confirm(result.pending.token)

    def test_move_without_warnings_applies_immediately(self) -> None:
        self._place(1, "A")
        snapshot = self.store.load(DAY)

        result = self.store.propose(snapshot, 1, Slot("A"), Slot("C"))

        self.assertTrue(result.applied)
        self.assertEqual(result.snapshot.slots_of(1), [Slot("C")])
        self.assertEqual(len(self.pending), 0)

    def test_repeat_of_previous_station_warns(self) -> None:
        insert_history(self.session, 1, "C", None, DAY - datetime.timedelta(days=3))
        self.session.commit()
        self._place(1, "A")

        warnings = self.store.check_move(DAY, 1, Slot("A"), Slot("C"))

        self.assertEqual([warning.kind for warning in warnings], ["repeat"])

    def test_lane_change_within_station_never_warns(self) -> None:
        self._past(1, "B", 20, lane=1)
        self._place(1, "B", 1)

        self.assertEqual(self.store.check_move(DAY, 1, Slot("B", 1), Slot("B", 3)), [])

    def test_lanes_may_be_shared(self) -> None:
        self._place(1, "B", 2)
        self._place(2, "A")
        snapshot = self.store.load(DAY)

        updated = self.store.move(snapshot, 2, Slot("A"), Slot("B", 2))

        self.assertEqual(updated.lanes_of("B"), {2: [1, 2]})

    def test_rejects_invalid_targets(self) -> None:
        self._place(1, "A")
        snapshot = self.store.load(DAY)

        for target in (Slot("B", 4), Slot("B"), Slot("A", 1), Slot("FL"), Slot("Nope")):
            with self.subTest(target=target):
                with self.assertRaises(ValueError):
                    self.store.move(snapshot, 1, Slot("A"), target)
        self.assertEqual(self._rows(DailyAssignment, 1), [("A", None)])

    def test_propose_requires_worker_at_source(self) -> None:
        self._place(1, "A")
        snapshot = self.store.load(DAY)

        with self.assertRaises(ValueError):
            self.store.propose(snapshot, 1, Slot("C"), Slot("B", 1))
        with self.assertRaises(ValueError):
            self.store.propose(snapshot, 9, Slot("A"), Slot("C"))

    def test_missing_assignment_row_is_inconsistent(self) -> None:
        insert_history(self.session, 1, "A", None, DAY)
        self.session.commit()
        snapshot = AssignmentSnapshot(date=DAY, placements=(Placement(1, "A"),))

        with self.assertRaises(InconsistentStateError) as ctx:
            self.store.move(snapshot, 1, Slot("A"), Slot("C"))

        self.assertEqual(ctx.exception.assigned_date, DAY)
        self.assertEqual(self._rows(DailyAssignment, 1), [])
        self.assertEqual(self._rows(WorkHistory, 1), [("A", None)])

    def test_missing_history_row_is_inconsistent_and_rolled_back(self) -> None:
        insert_assignment(self.session, 1, "A", None, DAY)
        self.session.commit()
        snapshot = self.store.load(DAY)

        with self.assertRaises(InconsistentStateError):
            self.store.move(snapshot, 1, Slot("A"), Slot("C"))

        self.assertEqual(self._rows(DailyAssignment, 1), [("A", None)])
        self.assertEqual(self._rows(WorkHistory, 1), [])

    def test_failed_history_write_rolls_back_assignment(self) -> None:
        self._place(1, "A")
        snapshot = self.store.load(DAY)

        with mock.patch.object(store_module, "insert_history", side_effect=RuntimeError("disk full")):
            with self.assertRaises(RuntimeError):
                self.store.move(snapshot, 1, Slot("A"), Slot("C"))

        self.assertEqual(self._rows(DailyAssignment, 1), [("A", None)])
        self.assertEqual(self._rows(WorkHistory, 1), [("A", None)])
        self.assertNotIn("MOVE", self._actions())

    def test_confirm_keeps_pending_entry_when_move_fails(self) -> None:
        self._past(1, "C", 12)
        self._past(1, "A", 1)
        self._place(1, "A")
        result = self.store.propose(self.store.load(DAY), 1, Slot("A"), Slot("C"))
        self.session.execute(WorkHistory.__table__.delete().where(WorkHistory.work_date == DAY))
        self.session.commit()

        with self.assertRaises(InconsistentStateError):
            self.store.confirm(result.pending.token)

        self.assertIn(result.pending.token, self.pending)
        self.assertEqual(self._rows(DailyAssignment, 1), [("A", None)])

    def test_confirm_returns_current_day(self) -> None:
        self._past(1, "C", 12)
        self._past(1, "A", 1)
        self._place(1, "A")
        self._place(2, "A")
        result = self.store.propose(self.store.load(DAY), 1, Slot("A"), Slot("C"))
        self.store.move(self.store.load(DAY), 2, Slot("A"), Slot("B", 1))

        updated = self.store.confirm(result.pending.token)

        self.assertEqual(updated.slots_of(1), [Slot("C")])
        self.assertEqual(updated.slots_of(2), [Slot("B", 1)])
        self.assertEqual(updated, self.store.load(DAY))

    def test_stale_snapshot_is_rejected_without_inconsistency(self) -> None:
        self._place(1, "A")
        stale = self.store.load(DAY)
        self.store.move(stale, 1, Slot("A"), Slot("C"))

        with self.assertRaises(ValueError) as ctx:
            self.store.move(stale, 1, Slot("A"), Slot("B", 1))

        self.assertNotIsInstance(ctx.exception, InconsistentStateError)
        self.assertEqual(self._rows(DailyAssignment, 1), [("C", None)])
        self.assertEqual(self._rows(WorkHistory, 1), [("C", None)])

    def test_second_token_for_same_move_is_stale(self) -> None:
        self._past(1, "C", 12)
        self._past(1, "A", 1)
        self._place(1, "A")
        snapshot = self.store.load(DAY)
        first = self.store.propose(snapshot, 1, Slot("A"), Slot("C"))
        second = self.store.propose(snapshot, 1, Slot("A"), Slot("C"))

        self.store.confirm(first.pending.token)
        with self.assertRaises(ValueError) as ctx:
            self.store.confirm(second.pending.token)

        self.assertNotIsInstance(ctx.exception, InconsistentStateError)
        self.assertEqual(self._rows(DailyAssignment, 1), [("C", None)])
        self.assertEqual(self._rows(WorkHistory, 1), [("C", None)])

    def test_overuse_ignores_days_after_the_move(self) -> None:
        for offset in range(1, 13):
            insert_history(self.session, 1, "C", None, DAY + datetime.timedelta(days=offset))
        self.session.commit()
        self._place(1, "A")

        self.assertEqual(self.store.check_move(DAY, 1, Slot("A"), Slot("C")), [])

    def test_pending_moves_expire(self) -> None:
        registry = PendingMoveRegistry(max_age=datetime.timedelta(hours=1))
        snapshot = AssignmentSnapshot(date=DAY)
        now = datetime.datetime.now(datetime.timezone.utc)
        registry.add(
            PendingConfirmation("old", snapshot, 1, Slot("A"), Slot("C"), created_at=now - datetime.timedelta(hours=2))
        )
        registry.add(PendingConfirmation("fresh", snapshot, 2, Slot("A"), Slot("C"), created_at=now))

        self.assertNotIn("old", registry)
        self.assertIn("fresh", registry)
        self.assertEqual(len(registry), 1)
        with self.assertRaises(ValueError):
            registry.get("old")
        self.assertEqual(registry.purge_expired(now + datetime.timedelta(hours=2)), 1)
        self.assertEqual(len(registry), 0)

    def test_unknown_token_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.store.confirm("missing")
        with self.assertRaises(ValueError):
            self.store.cancel("missing")

    def test_rebuild_history_restores_mirror(self) -> None:
        self._place(1, "A")
        self._place(2, "B", 1)
        insert_assignment(self.session, None, "FL", None, DAY, label="Extern")
        insert_history(self.session, 7, "C", None, DAY)
        self.session.commit()

        rebuilt = self.store.rebuild_history(DAY)

        self.assertEqual(rebuilt, 2)
        keys = sorted((row.worker_id, row.station, row.lane) for row in get_history_for_date(self.session, DAY))
        self.assertEqual(keys, [(1, "A", None), (2, "B", 1)])
        self.assertEqual(self._actions(), ["HISTORY_REBUILD"])

    def test_load_reads_manual_text(self) -> None:
        self._place(1, "A")
        insert_assignment(self.session, None, "FL", None, DAY, label="Inhyrd")
        self.session.commit()

        snapshot = self.store.load(DAY)

        self.assertEqual(snapshot.worker_ids(), [1])
        self.assertEqual(snapshot.manual_text, "Inhyrd")


if __name__ == "__main__":
    unittest.main()
