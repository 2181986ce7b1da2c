"""Lightweight FastAPI wrapper around the planning engine.

Each request gets its own planning session; pending moves live in the
process-wide registry so a confirm can arrive on a later request.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

# Ensure absolute imports (e.g., "import database") resolve when served as app.api.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from database import (  # noqa: E402
    InconsistentStateError,
    get_assignments_for_week,
    get_station_needs,
    init_database,
    list_active_workers,
    record_audit_log,
    worker_names,
)
from generator.api import distribute_for_date  # noqa: E402
from generator.engine import SelectionError  # noqa: E402
from history import history_for, last_stations, least_visited_stations, window_start_for  # noqa: E402
from needs import NeedsRegistry, save_station_needs  # noqa: E402
from policy import ensure_default_policy, history_window_months, load_active_policy, station_catalog  # noqa: E402
from rotation import available_stations  # noqa: E402
from snapshot import Slot, fill_summary, snapshot_to_dict  # noqa: E402
from stations import station_names  # noqa: E402
from store import PENDING_MOVES, AssignmentStore, PendingConfirmation  # noqa: E402
from validation import validate_day  # noqa: E402


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    ensure_default_policy(database.SessionLocal)
    yield


app = FastAPI(title="Station Rotation Planner API", version="0.1", lifespan=lifespan)


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_worker_db():
    db = database.WorkerSessionLocal()
    try:
        yield db
    finally:
        db.close()


def _parse_day(value: str, field: str = "day") -> datetime.date:
    try:
        return datetime.date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be YYYY-MM-DD")


def _parse_slot(payload: Any, field: str) -> Slot:
    if not isinstance(payload, dict) or not payload.get("station"):
        raise HTTPException(status_code=400, detail=f"{field}.station is required")
    lane = payload.get("lane")
    if lane is not None:
        try:
            lane = int(lane)
        except (TypeError, ValueError):
            raise HTTPException(status_code=400, detail=f"{field}.lane must be an integer")
    return Slot(str(payload["station"]), lane)


def _pending_payload(pending: PendingConfirmation) -> Dict[str, Any]:
    return {
        "token": pending.token,
        "worker_id": pending.worker_id,
        "from": {"station": pending.source.station, "lane": pending.source.lane},
        "to": {"station": pending.target.station, "lane": pending.target.lane},
        "warnings": [
            {"kind": warning.kind, "message": warning.message, "count": warning.count, "threshold": warning.threshold}
            for warning in pending.warnings
        ],
    }


def _day_payload(db, store: AssignmentStore, snapshot, worker_db) -> Dict[str, Any]:
    names = worker_names(snapshot.worker_ids(), worker_db)
    payload = snapshot_to_dict(snapshot, names)
    payload["stations"] = fill_summary(snapshot, get_station_needs(db, snapshot.date), store.catalog)
    return payload


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/workers")
def workers(
    shift: Optional[str] = Query(None),
    q: Optional[str] = Query(None),
    worker_db=Depends(get_worker_db),
) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder({"workers": list_active_workers(worker_db, shift=shift, query=q)}))


@app.get("/api/v1/days/{day}/needs")
def day_needs(day: str, db=Depends(get_db)) -> JSONResponse:
    target = _parse_day(day)
    catalog = station_catalog(load_active_policy(db))
    registry = NeedsRegistry.load(db, target, catalog)
    return JSONResponse(content=jsonable_encoder({"date": target.isoformat(), "needs": registry.as_dict()}))


@app.put("/api/v1/days/{day}/needs")
def save_day_needs(day: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    target = _parse_day(day)
    needs = payload.get("needs") or {}
    if not isinstance(needs, dict):
        raise HTTPException(status_code=400, detail="needs must be an object of station -> count")
    catalog = station_catalog(load_active_policy(db))
    try:
        registry = save_station_needs(db, target, needs, catalog)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    record_audit_log(
        db,
        user_id=payload.get("actor") or "api",
        action="NEEDS_SAVE",
        target_type="StationNeed",
        payload={"date": target.isoformat(), "needs": registry.as_dict()},
    )
    return JSONResponse(content=jsonable_encoder({"date": target.isoformat(), "needs": registry.as_dict()}))


@app.post("/api/v1/days/{day}/distribute")
def distribute(day: str, payload: Dict[str, Any], db=Depends(get_db), worker_db=Depends(get_worker_db)) -> JSONResponse:
    target = _parse_day(day)
    actor = (payload.get("actor") or "api").strip() or "api"
    try:
        worker_ids = [int(worker_id) for worker_id in payload.get("worker_ids") or []]
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="worker_ids must be integers")
    try:
        result = distribute_for_date(db, worker_ids, target, actor, manual_text=payload.get("manual_text"))
    except SelectionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except InconsistentStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    snapshot = result.pop("snapshot")
    names = worker_names(snapshot.worker_ids(), worker_db)
    result["assignments"] = snapshot_to_dict(snapshot, names)
    return JSONResponse(content=jsonable_encoder(result))


@app.get("/api/v1/days/{day}/assignments")
def day_assignments(day: str, db=Depends(get_db), worker_db=Depends(get_worker_db)) -> JSONResponse:
    target = _parse_day(day)
    store = AssignmentStore(db, actor="api")
    return JSONResponse(content=jsonable_encoder(_day_payload(db, store, store.load(target), worker_db)))


@app.post("/api/v1/days/{day}/moves")
def propose_move(day: str, payload: Dict[str, Any], db=Depends(get_db), worker_db=Depends(get_worker_db)) -> JSONResponse:
    target_day = _parse_day(day)
    try:
        worker_id = int(payload.get("worker_id"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="worker_id is required")
    source = _parse_slot(payload.get("from"), "from")
    target = _parse_slot(payload.get("to"), "to")
    store = AssignmentStore(db, actor=payload.get("actor") or "api", pending=PENDING_MOVES)
    try:
        result = store.propose(store.load(target_day), worker_id, source, target)
    except InconsistentStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if result.applied:
        return JSONResponse(
            content=jsonable_encoder({"status": "applied", "assignments": _day_payload(db, store, result.snapshot, worker_db)})
        )
    return JSONResponse(content=jsonable_encoder({"status": "pending", "pending": _pending_payload(result.pending)}))


@app.post("/api/v1/moves/{token}/confirm")
def confirm_move(
    token: str,
    payload: Dict[str, Any] | None = None,
    db=Depends(get_db),
    worker_db=Depends(get_worker_db),
) -> JSONResponse:
    store = AssignmentStore(db, actor=(payload or {}).get("actor") or "api", pending=PENDING_MOVES)
    if token not in store.pending:
        raise HTTPException(status_code=404, detail="Pending move not found")
    try:
        snapshot = store.confirm(token)
    except InconsistentStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(
        content=jsonable_encoder({"status": "applied", "assignments": _day_payload(db, store, snapshot, worker_db)})
    )


@app.delete("/api/v1/moves/{token}")
def cancel_move(token: str, db=Depends(get_db)) -> JSONResponse:
    store = AssignmentStore(db, actor="api", pending=PENDING_MOVES)
    if token not in store.pending:
        raise HTTPException(status_code=404, detail="Pending move not found")
    pending = store.cancel(token)
    return JSONResponse(content=jsonable_encoder({"status": "cancelled", "pending": _pending_payload(pending)}))


@app.get("/api/v1/workers/{worker_id}/available-stations")
def worker_available_stations(worker_id: int, day: str = Query(...), db=Depends(get_db)) -> JSONResponse:
    target = _parse_day(day)
    policy = load_active_policy(db)
    catalog = station_catalog(policy)
    previous = last_stations(db, [worker_id], before=target)
    stations = available_stations(worker_id, station_names(catalog, include_manual=False), previous)
    counts = history_for(db, worker_id, window_start_for(target, history_window_months(policy)), until=target)
    return JSONResponse(
        content=jsonable_encoder(
            {
                "worker_id": worker_id,
                "last_station": previous.get(worker_id),
                "stations": stations,
                "least_visited": least_visited_stations(counts, stations),
                "visits": counts,
            }
        )
    )


@app.get("/api/v1/days/{day}/validate")
def validate_day_endpoint(day: str, db=Depends(get_db)) -> JSONResponse:
    target = _parse_day(day)
    return JSONResponse(content=jsonable_encoder(validate_day(db, target)))


@app.get("/api/v1/weeks/{week_start}/assignments")
def week_assignments(week_start: str, db=Depends(get_db), worker_db=Depends(get_worker_db)) -> JSONResponse:
    start = _parse_day(week_start, "weekStart")
    days = get_assignments_for_week(db, start, worker_session=worker_db)
    return JSONResponse(content=jsonable_encoder({"week_start": min(days), "days": days}))
