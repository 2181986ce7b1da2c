from __future__ import annotations

import datetime
import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
WORKER_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'workers.db').as_posix()}"
PLANNING_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'planning.db').as_posix()}"

logger = logging.getLogger(__name__)


class InconsistentStateError(RuntimeError):
    """Assignments and the history ledger disagree for a date.

    Raised when a divergence is detected before a write, or when a multi-step
    write failed and could not be rolled back. Never repaired automatically.
    """

    def __init__(self, message: str, *, assigned_date: Optional[datetime.date] = None) -> None:
        super().__init__(message)
        self.assigned_date = assigned_date


def _normalize_week_start(date_value: datetime.date) -> datetime.date:
    """Return the Monday for the provided date."""
    if isinstance(date_value, datetime.datetime):
        date_value = date_value.date()
    weekday = date_value.weekday()
    if weekday == 0:
        return date_value
    return date_value - datetime.timedelta(days=weekday)


class WorkerBase(DeclarativeBase):
    """Standalone metadata for the roster living in workers.db."""

    pass


class Base(DeclarativeBase):
    """Metadata for planning tables living in planning.db."""

    pass


class Worker(WorkerBase):
    __tablename__ = "workers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    shift: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.datetime.now(datetime.timezone.utc)
    )


class StationNeed(Base):
    __tablename__ = "station_needs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    station: Mapped[str] = mapped_column(String(40), nullable=False)
    need_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    needed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (UniqueConstraint("station", "need_date", name="uq_station_need_station_date"),)


class DailyAssignment(Base):
    __tablename__ = "daily_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # NULL for the manual station, which stores free text in ``label``.
    worker_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    station: Mapped[str] = mapped_column(String(40), nullable=False)
    lane: Mapped[int | None] = mapped_column(Integer, nullable=True)
    assigned_date: Mapped[datetime.date] = mapped_column(Date, nullable=False, index=True)
    label: Mapped[str] = mapped_column(String(120), nullable=False, default="")


class WorkHistory(Base):
    __tablename__ = "work_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    worker_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    station: Mapped[str] = mapped_column(String(40), nullable=False)
    lane: Mapped[int | None] = mapped_column(Integer, nullable=True)
    work_date: Mapped[datetime.date] = mapped_column(Date, nullable=False, index=True)


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.datetime.now(datetime.timezone.utc)
    )

    __table_args__ = (UniqueConstraint("name", name="uq_policies_name"),)

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Assignment")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.datetime.now(datetime.timezone.utc)
    )


worker_engine = create_engine(
    WORKER_DATABASE_URL,
    echo=False,
    future=True,
)
planning_engine = create_engine(
    PLANNING_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=planning_engine, expire_on_commit=False, future=True)
WorkerSessionLocal = sessionmaker(bind=worker_engine, expire_on_commit=False, future=True)


def init_database() -> None:
    WorkerBase.metadata.create_all(worker_engine)
    Base.metadata.create_all(planning_engine)


def _coerce_worker_session(session):
    """Return (worker_session, should_close) ensuring we talk to the roster database."""
    if session is None:
        return WorkerSessionLocal(), True
    return session, False


# --- Roster (read-only for the planner) ---


def list_active_workers(
    worker_session=None,
    *,
    shift: Optional[str] = None,
    query: Optional[str] = None,
) -> List[Dict[str, Any]]:
    worker_session, close_session = _coerce_worker_session(worker_session)
    try:
        stmt = select(Worker).where(Worker.is_active.is_(True))
        if shift:
            stmt = stmt.where(Worker.shift == shift)
        stmt = stmt.order_by(Worker.name.asc(), Worker.id.asc())
        needle = (query or "").strip().lower()
        workers = []
        for worker in worker_session.scalars(stmt):
            if needle and needle not in worker.name.lower():
                continue
            workers.append({"id": worker.id, "name": worker.name, "shift": worker.shift})
        return workers
    finally:
        if close_session:
            worker_session.close()


def worker_names(worker_ids: Iterable[int], worker_session=None) -> Dict[int, str]:
    ids = {worker_id for worker_id in worker_ids if worker_id is not None}
    if not ids:
        return {}
    worker_session, close_session = _coerce_worker_session(worker_session)
    try:
        rows = worker_session.execute(select(Worker.id, Worker.name).where(Worker.id.in_(ids)))
        return {row[0]: row[1] for row in rows}
    finally:
        if close_session:
            worker_session.close()


# --- Station needs ---


def upsert_station_need(session, station: str, need_date: datetime.date, count: int) -> StationNeed:
    if count is None or int(count) < 0:
        raise ValueError("Needed count must be zero or greater.")
    stmt = select(StationNeed).where(
        StationNeed.station == station,
        StationNeed.need_date == need_date,
    )
    need = session.scalars(stmt).first()
    if need is None:
        need = StationNeed(station=station, need_date=need_date)
        session.add(need)
    need.needed_count = int(count)
    session.commit()
    return need


def get_station_needs(session, need_date: datetime.date) -> Dict[str, int]:
    stmt = select(StationNeed).where(StationNeed.need_date == need_date)
    return {need.station: need.needed_count for need in session.scalars(stmt)}


# --- Assignments ---
# Insert/delete helpers only flush; the caller owns the transaction.


def delete_assignments(session, assigned_date: datetime.date) -> int:
    result = session.execute(delete(DailyAssignment).where(DailyAssignment.assigned_date == assigned_date))
    return result.rowcount or 0


def insert_assignment(
    session,
    worker_id: Optional[int],
    station: str,
    lane: Optional[int],
    assigned_date: datetime.date,
    *,
    label: str = "",
) -> DailyAssignment:
    row = DailyAssignment(
        worker_id=worker_id,
        station=station,
        lane=lane,
        assigned_date=assigned_date,
        label=label or "",
    )
    session.add(row)
    session.flush()
    return row


def delete_assignment(
    session,
    worker_id: int,
    assigned_date: datetime.date,
    station: str,
    lane: Optional[int],
) -> int:
    """Delete a single matching assignment row; returns the number removed (0 or 1)."""
    row_id = session.scalars(
        select(DailyAssignment.id)
        .where(
            DailyAssignment.worker_id == worker_id,
            DailyAssignment.assigned_date == assigned_date,
            DailyAssignment.station == station,
            _lane_clause(DailyAssignment.lane, lane),
        )
        .order_by(DailyAssignment.id)
        .limit(1)
    ).first()
    if row_id is None:
        return 0
    session.execute(delete(DailyAssignment).where(DailyAssignment.id == row_id))
    return 1


def get_assignments(session, assigned_date: datetime.date) -> List[DailyAssignment]:
    stmt = (
        select(DailyAssignment)
        .where(DailyAssignment.assigned_date == assigned_date)
        .order_by(DailyAssignment.id)
    )
    return list(session.scalars(stmt))


def get_assignments_for_week(
    session,
    week_start: datetime.date,
    *,
    worker_session=None,
) -> Dict[str, Dict[str, List[Dict[str, Any]]]]:
    """Return the week's assignments grouped by ISO date, then by station."""
    start = _normalize_week_start(week_start)
    end = start + datetime.timedelta(days=6)
    stmt = (
        select(DailyAssignment)
        .where(DailyAssignment.assigned_date >= start, DailyAssignment.assigned_date <= end)
        .order_by(DailyAssignment.assigned_date, DailyAssignment.id)
    )
    rows = list(session.scalars(stmt))
    names = worker_names((row.worker_id for row in rows), worker_session)
    grouped: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
    for offset in range(7):
        grouped[(start + datetime.timedelta(days=offset)).isoformat()] = {}
    for row in rows:
        by_station = grouped[row.assigned_date.isoformat()]
        if row.worker_id is None:
            name = row.label
        else:
            name = names.get(row.worker_id, "Unknown")
        by_station.setdefault(row.station, []).append(
            {"worker_id": row.worker_id, "name": name, "lane": row.lane}
        )
    return grouped


# --- History ledger ---


def insert_history(
    session,
    worker_id: int,
    station: str,
    lane: Optional[int],
    work_date: datetime.date,
) -> WorkHistory:
    row = WorkHistory(worker_id=worker_id, station=station, lane=lane, work_date=work_date)
    session.add(row)
    session.flush()
    return row


def delete_history(
    session,
    worker_id: int,
    work_date: datetime.date,
    station: str,
    lane: Optional[int],
) -> int:
    """Delete a single matching ledger row; returns the number removed (0 or 1)."""
    row_id = session.scalars(
        select(WorkHistory.id)
        .where(
            WorkHistory.worker_id == worker_id,
            WorkHistory.work_date == work_date,
            WorkHistory.station == station,
            _lane_clause(WorkHistory.lane, lane),
        )
        .order_by(WorkHistory.id)
        .limit(1)
    ).first()
    if row_id is None:
        return 0
    session.execute(delete(WorkHistory).where(WorkHistory.id == row_id))
    return 1


def delete_history_for_date(session, work_date: datetime.date) -> int:
    result = session.execute(delete(WorkHistory).where(WorkHistory.work_date == work_date))
    return result.rowcount or 0


def query_history(
    session,
    worker_id: int,
    since: datetime.date,
    *,
    until: Optional[datetime.date] = None,
) -> List[tuple]:
    """Return ``(station, lane, work_date)`` rows for the worker on or after ``since``.

    ``until`` is exclusive when given.
    """
    stmt = select(WorkHistory.station, WorkHistory.lane, WorkHistory.work_date).where(
        WorkHistory.worker_id == worker_id,
        WorkHistory.work_date >= since,
    )
    if until is not None:
        stmt = stmt.where(WorkHistory.work_date < until)
    stmt = stmt.order_by(WorkHistory.work_date, WorkHistory.id)
    return [tuple(row) for row in session.execute(stmt)]


def get_history_for_date(session, work_date: datetime.date) -> List[WorkHistory]:
    stmt = select(WorkHistory).where(WorkHistory.work_date == work_date).order_by(WorkHistory.id)
    return list(session.scalars(stmt))


def _lane_clause(column, lane: Optional[int]):
    if lane is None:
        return column.is_(None)
    return column == lane


# --- Policies ---


def upsert_policy(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> Policy:
    stmt = select(Policy).where(Policy.name == name)
    policy = session.scalars(stmt).first()
    payload = json.dumps(params_dict or {})
    if policy:
        policy.paramsJSON = payload
        policy.lastEditedBy = edited_by or "system"
        policy.lastEditedAt = datetime.datetime.now(datetime.timezone.utc)
    else:
        policy = Policy(name=name, paramsJSON=payload, lastEditedBy=edited_by or "system")
        session.add(policy)
    session.commit()
    session.refresh(policy)
    return policy


def get_active_policy(session) -> Optional[Policy]:
    stmt = select(Policy).order_by(Policy.lastEditedAt.desc(), Policy.id.desc())
    return session.scalars(stmt).first()


# --- Audit ---


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "Assignment",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    session.commit()
    return log


@contextmanager
def planning_transaction(session, assigned_date: datetime.date, operation: str) -> Iterator[None]:
    """Run a multi-step assignment/ledger write as one unit of failure.

    Everything inside the block is committed together or rolled back. A failed
    write whose rollback also fails leaves assignments and the ledger in an
    unknown relation; that case is surfaced as ``InconsistentStateError``.
    """
    try:
        yield
        session.commit()
    except Exception as exc:
        logger.warning("%s for %s failed, rolling back: %s", operation, assigned_date, exc)
        try:
            session.rollback()
        except Exception as rollback_exc:
            logger.error("Rollback of %s for %s failed: %s", operation, assigned_date, rollback_exc)
            raise InconsistentStateError(
                f"{operation} for {assigned_date.isoformat()} left assignments and history out of sync.",
                assigned_date=assigned_date,
            ) from rollback_exc
        raise
