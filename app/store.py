from __future__ import annotations

import datetime
import logging
import secrets
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from database import (
    InconsistentStateError,
    delete_assignment,
    delete_history,
    delete_history_for_date,
    get_assignments,
    insert_assignment,
    insert_history,
    planning_transaction,
    record_audit_log,
)
from history import history_for, last_stations, window_start_for
from overuse import evaluate
from policy import history_window_months, load_active_policy, manual_station_name, overuse_settings, station_catalog
from rotation import can_assign
from snapshot import AssignmentSnapshot, Slot, snapshot_from_rows
from stations import require_worker_slot

logger = logging.getLogger(__name__)

UTC = datetime.timezone.utc
DEFAULT_PENDING_MAX_AGE = datetime.timedelta(hours=12)


@dataclass(frozen=True)
class MoveWarning:
    kind: str  # "overuse" or "repeat"
    message: str
    count: int = 0
    threshold: float = 0.0


@dataclass
class PendingConfirmation:
    token: str
    snapshot: AssignmentSnapshot
    worker_id: int
    source: Slot
    target: Slot
    warnings: List[MoveWarning] = field(default_factory=list)
    created_at: datetime.datetime = field(default_factory=lambda: datetime.datetime.now(UTC))


@dataclass
class MoveResult:
    status: str  # "applied" or "pending"
    snapshot: Optional[AssignmentSnapshot] = None
    pending: Optional[PendingConfirmation] = None

    @property
    def applied(self) -> bool:
        return self.status == "applied"


class PendingMoveRegistry:
    """Moves waiting for an operator's confirm/cancel, keyed by token.

    Entries older than ``max_age`` are dropped on the next access.
    """

    def __init__(self, max_age: datetime.timedelta = DEFAULT_PENDING_MAX_AGE) -> None:
        self.max_age = max_age
        self._pending: Dict[str, PendingConfirmation] = {}

    def add(self, pending: PendingConfirmation) -> PendingConfirmation:
        self.purge_expired()
        self._pending[pending.token] = pending
        return pending

    def get(self, token: str) -> PendingConfirmation:
        self.purge_expired()
        pending = self._pending.get(token)
        if pending is None:
            raise ValueError(f"No pending move with token '{token}'.")
        return pending

    def discard(self, token: str) -> Optional[PendingConfirmation]:
        return self._pending.pop(token, None)

    def purge_expired(self, now: Optional[datetime.datetime] = None) -> int:
        cutoff = (now or datetime.datetime.now(UTC)) - self.max_age
        expired = [token for token, pending in self._pending.items() if pending.created_at < cutoff]
        for token in expired:
            del self._pending[token]
        if expired:
            logger.info("Dropped %d expired pending move(s)", len(expired))
        return len(expired)

    def __len__(self) -> int:
        self.purge_expired()
        return len(self._pending)

    def __contains__(self, token: object) -> bool:
        self.purge_expired()
        return token in self._pending


PENDING_MOVES = PendingMoveRegistry()


class AssignmentStore:
    def __init__(
        self,
        session,
        policy: Optional[Dict] = None,
        *,
        actor: str = "system",
        pending: Optional[PendingMoveRegistry] = None,
    ) -> None:
        self.session = session
        self.policy = policy if policy is not None else load_active_policy(session)
        self.actor = actor or "system"
        self.pending = pending if pending is not None else PENDING_MOVES
        self.catalog = station_catalog(self.policy)
        self.manual_station = manual_station_name(self.policy)

    def load(self, day: datetime.date) -> AssignmentSnapshot:
        return snapshot_from_rows(day, get_assignments(self.session, day), manual_station=self.manual_station)

    def move(
        self,
        snapshot: AssignmentSnapshot,
        worker_id: int,
        source: Slot,
        target: Slot,
    ) -> AssignmentSnapshot:
        """Move one placement of ``worker_id`` from ``source`` to ``target``.

        The assignment change and its ledger mirror are written in one
        transaction. A worker already gone from ``source`` (stale snapshot) raises
        ``ValueError``; an assignment row without its ledger row, or the reverse,
        raises ``InconsistentStateError``. Neither case writes anything.
        """
        if source == target:
            return snapshot
        station = require_worker_slot(self.catalog, target.station, target.lane)
        target = Slot(station.name, target.lane)
        if source == target:
            return snapshot
        updated = snapshot.with_move(worker_id, source, target)
        day = snapshot.date

        with planning_transaction(self.session, day, "Move"):
            removed_assignment = delete_assignment(self.session, worker_id, day, source.station, source.lane)
            removed_history = delete_history(self.session, worker_id, day, source.station, source.lane)
            if not removed_assignment and not removed_history:
                raise ValueError(
                    f"Worker {worker_id} is no longer at {_slot_label(source)} on {day.isoformat()}; "
                    "reload the day and try again."
                )
            if not removed_assignment:
                logger.error("Assignment missing for worker %s at %s on %s", worker_id, _slot_label(source), day)
                raise InconsistentStateError(
                    f"No stored assignment for worker {worker_id} at {_slot_label(source)} on {day.isoformat()}.",
                    assigned_date=day,
                )
            if not removed_history:
                logger.error("Ledger row missing for worker %s at %s on %s", worker_id, _slot_label(source), day)
                raise InconsistentStateError(
                    f"History ledger has no row for worker {worker_id} at {_slot_label(source)} "
                    f"on {day.isoformat()}.",
                    assigned_date=day,
                )
            insert_assignment(self.session, worker_id, target.station, target.lane, day)
            insert_history(self.session, worker_id, target.station, target.lane, day)

        record_audit_log(
            self.session,
            user_id=self.actor,
            action="MOVE",
            target_id=worker_id,
            payload={
                "date": day.isoformat(),
                "from": {"station": source.station, "lane": source.lane},
                "to": {"station": target.station, "lane": target.lane},
            },
        )
        return updated

    def check_move(self, day: datetime.date, worker_id: int, source: Slot, target: Slot) -> List[MoveWarning]:
        """Return advisory warnings for a move; lane changes within a station never warn."""
        if source.station == target.station:
            return []
        warnings: List[MoveWarning] = []
        ratio, min_count = overuse_settings(self.policy)
        window_start = window_start_for(day, history_window_months(self.policy))
        counts = history_for(self.session, worker_id, window_start, until=day + datetime.timedelta(days=1))
        result = evaluate(worker_id, target.station, counts, ratio=ratio, min_count=min_count)
        if result.warn:
            warnings.append(
                MoveWarning(kind="overuse", message=result.message(), count=result.count, threshold=result.threshold)
            )
        previous = last_stations(self.session, [worker_id], before=day)
        if not can_assign(worker_id, target.station, previous):
            warnings.append(
                MoveWarning(
                    kind="repeat",
                    message=f"Worker was at {target.station} on their previous working day.",
                )
            )
        return warnings

    def propose(
        self,
        snapshot: AssignmentSnapshot,
        worker_id: int,
        source: Slot,
        target: Slot,
    ) -> MoveResult:
        if source == target:
            return MoveResult(status="applied", snapshot=snapshot)
        station = require_worker_slot(self.catalog, target.station, target.lane)
        target = Slot(station.name, target.lane)
        if worker_id not in snapshot.worker_ids() or source not in snapshot.slots_of(worker_id):
            raise ValueError(f"Worker {worker_id} is not placed at {_slot_label(source)} in this snapshot.")
        warnings = self.check_move(snapshot.date, worker_id, source, target)
        if not warnings:
            return MoveResult(status="applied", snapshot=self.move(snapshot, worker_id, source, target))
        pending = self.pending.add(
            PendingConfirmation(
                token=secrets.token_urlsafe(16),
                snapshot=snapshot,
                worker_id=worker_id,
                source=source,
                target=target,
                warnings=warnings,
            )
        )
        record_audit_log(
            self.session,
            user_id=self.actor,
            action="MOVE_PENDING",
            target_id=worker_id,
            payload={"date": snapshot.date.isoformat(), "warnings": [warning.kind for warning in warnings]},
        )
        return MoveResult(status="pending", pending=pending)

    def confirm(self, token: str) -> AssignmentSnapshot:
        pending = self.pending.get(token)
        # Moves applied since the proposal must survive in the returned day.
        current = self.load(pending.snapshot.date)
        updated = self.move(current, pending.worker_id, pending.source, pending.target)
        self.pending.discard(token)
        record_audit_log(
            self.session,
            user_id=self.actor,
            action="MOVE_CONFIRM",
            target_id=pending.worker_id,
            payload={"date": pending.snapshot.date.isoformat()},
        )
        return updated

    def cancel(self, token: str) -> PendingConfirmation:
        pending = self.pending.get(token)
        self.pending.discard(token)
        record_audit_log(
            self.session,
            user_id=self.actor,
            action="MOVE_CANCEL",
            target_id=pending.worker_id,
            payload={"date": pending.snapshot.date.isoformat()},
        )
        return pending

    def rebuild_history(self, day: datetime.date) -> int:
        """Rewrite the day's ledger rows from its assignment rows. Operator repair only."""
        rows = [row for row in get_assignments(self.session, day) if row.worker_id is not None]
        with planning_transaction(self.session, day, "History rebuild"):
            delete_history_for_date(self.session, day)
            for row in rows:
                insert_history(self.session, row.worker_id, row.station, row.lane, day)
        record_audit_log(
            self.session,
            user_id=self.actor,
            action="HISTORY_REBUILD",
            payload={"date": day.isoformat(), "rows": len(rows)},
        )
        return len(rows)


def _slot_label(slot: Slot) -> str:
    if slot.lane is None:
        return slot.station
    return f"{slot.station} lane {slot.lane}"
