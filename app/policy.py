from __future__ import annotations

import copy
from typing import Any, Dict, List, Tuple

from database import get_active_policy, upsert_policy
from policy_defaults import (
    DEFAULT_HISTORY_WINDOW_MONTHS,
    DEFAULT_OVERUSE,
    default_policy_payload,
)
from stations import Station, build_catalog, manual_station


def load_active_policy(conn) -> Dict:
    """Return the active policy payload as a dict."""
    if conn is None:
        return _normalize_policy({})
    if callable(conn):
        with conn() as session:
            policy = get_active_policy(session)
            return _normalize_policy(policy.params_dict() if policy else {})
    policy = get_active_policy(conn)
    return _normalize_policy(policy.params_dict() if policy else {})


def _normalize_policy(policy: Dict) -> Dict:
    """Layer a stored policy over the defaults so every key the engine reads exists."""
    if not isinstance(policy, dict):
        policy = {}
    normalized = _deep_update(default_policy_payload(), policy)
    # Station lists replace rather than merge; an empty list means "use defaults".
    if not build_catalog(normalized.get("stations") or []):
        normalized["stations"] = default_policy_payload()["stations"]
    return normalized


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_update(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def station_catalog(policy: Dict) -> List[Station]:
    return build_catalog((policy or {}).get("stations") or default_policy_payload()["stations"])


def manual_station_name(policy: Dict) -> str | None:
    station = manual_station(station_catalog(policy))
    return station.name if station else None


def history_window_months(policy: Dict) -> int:
    try:
        months = int((policy or {}).get("history_window_months", DEFAULT_HISTORY_WINDOW_MONTHS))
    except (TypeError, ValueError):
        return DEFAULT_HISTORY_WINDOW_MONTHS
    return max(1, months)


def overuse_settings(policy: Dict) -> Tuple[float, int]:
    """Return ``(ratio, min_count)`` for the overuse heuristic."""
    cfg = (policy or {}).get("overuse") or {}
    try:
        ratio = float(cfg.get("ratio", DEFAULT_OVERUSE["ratio"]))
    except (TypeError, ValueError):
        ratio = float(DEFAULT_OVERUSE["ratio"])
    try:
        min_count = int(cfg.get("min_count", DEFAULT_OVERUSE["min_count"]))
    except (TypeError, ValueError):
        min_count = int(DEFAULT_OVERUSE["min_count"])
    return max(0.0, ratio), max(0, min_count)


def build_default_policy() -> Dict[str, Any]:
    """Return a deepcopy so callers can mutate the policy safely."""
    return default_policy_payload()


def ensure_default_policy(session_factory) -> None:
    """Seed the default policy exactly once so planning can run end-to-end."""

    with session_factory() as session:
        if get_active_policy(session):
            return
        payload = build_default_policy()
        name = payload.get("name", "Default Policy")
        params = {key: value for key, value in payload.items() if key != "name"}
        upsert_policy(session, name, params, edited_by="system")
