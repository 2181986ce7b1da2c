from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import (  # noqa: E402
    AuditLog,
    Base,
    get_assignments,
    get_history_for_date,
    insert_history,
    upsert_station_need,
)
from generator.api import distribute_for_date  # noqa: E402
from generator.engine import AssignmentPlanner, SelectionError  # noqa: E402
from needs import NeedsRegistry  # noqa: E402
from stations import Station  # noqa: E402

DAY = datetime.date(2024, 6, 10)
CATALOG = [
    Station("A"),
    Station("B"),
    Station("L", lanes=3),
    Station("FL", manual=True),
]


def _plan(pool, needs, histories=None, manual_text=None, catalog=CATALOG):
    planner = AssignmentPlanner(catalog)
    snapshot = planner.distribute(pool, NeedsRegistry(DAY, catalog, needs), histories or {}, manual_text)
    return planner, snapshot


def test_largest_need_is_filled_first() -> None:
    planner, snapshot = _plan([1, 2, 3], {"A": 1, "B": 3})

    assert snapshot.by_station() == {"B": [1, 2, 3]}
    assert snapshot.unassigned == ()
    assert planner.shortages() == {"A": 1}


def test_never_exceeds_need_and_places_each_worker_once() -> None:
    _planner, snapshot = _plan([1, 2, 3, 4, 5, 6], {"A": 2, "B": 1, "L": 2})

    assert snapshot.count_at("A") == 2
    assert snapshot.count_at("B") == 1
    assert snapshot.count_at("L") == 2
    assert len(snapshot.worker_ids()) == len(set(snapshot.worker_ids()))
    assert sorted(snapshot.worker_ids() + list(snapshot.unassigned)) == [1, 2, 3, 4, 5, 6]


def test_least_visited_workers_go_first() -> None:
    histories = {1: {"A": 5}, 2: {"A": 0, "B": 9}, 3: {"A": 1}}

    _planner, snapshot = _plan([1, 2, 3], {"A": 2}, histories)

    assert snapshot.by_station() == {"A": [2, 3]}
    assert snapshot.unassigned == (1,)


def test_equal_counts_keep_selection_order() -> None:
    _planner, snapshot = _plan([3, 1, 2], {"A": 2})

    assert snapshot.by_station() == {"A": [3, 1]}


def test_equal_needs_keep_catalog_order() -> None:
    _planner, snapshot = _plan([1, 2], {"B": 1, "A": 1})

    assert [placement.station for placement in snapshot.placements] == ["A", "B"]
    assert snapshot.by_station() == {"A": [1], "B": [2]}


def test_duplicate_selection_is_collapsed() -> None:
    _planner, snapshot = _plan([1, 1, 2], {"A": 3})

    assert snapshot.worker_ids() == [1, 2]


def test_lane_stations_get_consecutive_lanes() -> None:
    _planner, snapshot = _plan([1, 2, 3, 4], {"L": 3})

    assert [(placement.worker_id, placement.lane) for placement in snapshot.placements] == [(1, 1), (2, 2), (3, 3)]
    assert snapshot.unassigned == (4,)


def test_lane_station_need_is_capped_at_lane_count() -> None:
    needs = NeedsRegistry(DAY, CATALOG, {"L": 5, "A": 4, "FL": 2, "Nope": 3})

    assert needs.needed("L") == 3
    assert needs.needed("A") == 4
    assert needs.as_dict() == {"A": 4, "B": 0, "L": 3}
    assert needs.capacity("L") == 3
    assert needs.capacity("A") is None


def test_manual_text_is_trimmed_and_kept() -> None:
    _planner, snapshot = _plan([1], {"A": 1}, manual_text="  Extern hjälp  ")

    assert snapshot.manual_text == "Extern hjälp"


def test_manual_text_needs_a_manual_station() -> None:
    catalog = [Station("A")]

    _planner, snapshot = _plan([1], {"A": 1}, manual_text="Extern", catalog=catalog)

    assert snapshot.manual_text is None


def test_empty_selection_is_rejected() -> None:
    with pytest.raises(SelectionError):
        _plan([], {"A": 1})


@pytest.fixture()
def session():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    with factory() as session:
        yield session
    engine.dispose()


def _row_keys(rows):
    return sorted((row.worker_id, row.station, row.lane) for row in rows)


def test_distribution_writes_assignments_and_history_together(session) -> None:
    upsert_station_need(session, "Plock", DAY, 1)
    upsert_station_need(session, "Pack", DAY, 2)

    result = distribute_for_date(session, [1, 2, 3, 4], DAY, "tests", manual_text="Inhyrd")

    assignments = get_assignments(session, DAY)
    history = get_history_for_date(session, DAY)
    worker_rows = [row for row in assignments if row.worker_id is not None]
    assert result["assigned"] == 3
    assert result["unassigned"] == [4]
    assert _row_keys(worker_rows) == [(1, "Pack", 1), (2, "Pack", 2), (3, "Plock", None)]
    assert _row_keys(history) == _row_keys(worker_rows)
    manual_rows = [row for row in assignments if row.worker_id is None]
    assert [(row.station, row.label) for row in manual_rows] == [("FL", "Inhyrd")]
    assert result["stations"]["Pack"] == {"filled": 2, "needed": 2}
    actions = session.scalars(select(AuditLog.action)).all()
    assert "DISTRIBUTE" in actions


def test_rerun_replaces_the_day(session) -> None:
    upsert_station_need(session, "KM", DAY, 2)
    distribute_for_date(session, [1, 2], DAY)

    distribute_for_date(session, [3, 4, 5], DAY)

    assert _row_keys(get_assignments(session, DAY)) == [(3, "KM", None), (4, "KM", None)]
    assert _row_keys(get_history_for_date(session, DAY)) == [(3, "KM", None), (4, "KM", None)]


def test_prior_history_drives_ranking(session) -> None:
    upsert_station_need(session, "Rep", DAY, 1)
    for offset in range(1, 4):
        insert_history(session, 1, "Rep", None, DAY - datetime.timedelta(days=offset))
    session.commit()

    result = distribute_for_date(session, [1, 2], DAY)

    assert result["snapshot"].by_station() == {"Rep": [2]}
    assert result["unassigned"] == [1]


def test_empty_selection_writes_nothing(session) -> None:
    upsert_station_need(session, "KM", DAY, 1)
    distribute_for_date(session, [1], DAY)

    with pytest.raises(SelectionError):
        distribute_for_date(session, [], DAY)

    assert _row_keys(get_assignments(session, DAY)) == [(1, "KM", None)]
