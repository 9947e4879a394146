"""Conversion between route aggregates and plain JSON-compatible records."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from ..models.domain import HistoryEntry, Route, Stop


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _parse_date(value: Any) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    return date.fromisoformat(str(value)[:10])


def _optional_float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def stop_to_record(stop: Stop) -> dict[str, Any]:
    return {
        "order_ref": stop.order_ref,
        "sequence_index": stop.sequence_index,
        "estimated_distance_km": stop.estimated_distance_km,
        "estimated_time_min": stop.estimated_time_min,
        "status": stop.status,
        "priority": stop.priority,
        "latitude": stop.latitude,
        "longitude": stop.longitude,
        "address": stop.address,
        "estimate_resolved": stop.estimate_resolved,
        "actual_distance_km": stop.actual_distance_km,
        "actual_time_min": stop.actual_time_min,
        "completed_at": _dt(stop.completed_at),
        "reason": stop.reason,
    }


def stop_from_record(record: dict[str, Any]) -> Stop:
    return Stop(
        order_ref=str(record["order_ref"]),
        sequence_index=int(record["sequence_index"]),
        estimated_distance_km=float(record.get("estimated_distance_km") or 0.0),
        estimated_time_min=float(record.get("estimated_time_min") or 0.0),
        status=record.get("status") or "pending",
        priority=record.get("priority") or "normal",
        latitude=_optional_float(record.get("latitude")),
        longitude=_optional_float(record.get("longitude")),
        address=record.get("address"),
        estimate_resolved=bool(record.get("estimate_resolved", True)),
        actual_distance_km=_optional_float(record.get("actual_distance_km")),
        actual_time_min=_optional_float(record.get("actual_time_min")),
        completed_at=_parse_dt(record.get("completed_at")),
        reason=record.get("reason"),
    )


def history_to_record(entry: HistoryEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "timestamp": _dt(entry.timestamp),
        "action": entry.action,
        "description": entry.description,
        "stop_count": entry.stop_count,
        "total_distance_km": entry.total_distance_km,
        "total_time_min": entry.total_time_min,
        "metadata": dict(entry.metadata),
    }


def history_from_record(record: dict[str, Any]) -> HistoryEntry:
    return HistoryEntry(
        id=str(record["id"]),
        timestamp=_parse_dt(record["timestamp"]),
        action=record["action"],
        description=record.get("description") or "",
        stop_count=int(record.get("stop_count") or 0),
        total_distance_km=float(record.get("total_distance_km") or 0.0),
        total_time_min=float(record.get("total_time_min") or 0.0),
        metadata=dict(record.get("metadata") or {}),
    )


def route_to_record(route: Route) -> dict[str, Any]:
    """Serialize a route. Transient warnings are not part of the record."""
    return {
        "id": route.id,
        "driver_id": route.driver_id,
        "created_at": _dt(route.created_at),
        "updated_at": _dt(route.updated_at),
        "shift_date": route.shift_date.isoformat(),
        "ended_at": _dt(route.ended_at),
        "total_distance_km": route.total_distance_km,
        "total_time_min": route.total_time_min,
        "completed_distance_km": route.completed_distance_km,
        "completed_time_min": route.completed_time_min,
        "origin": list(route.origin) if route.origin is not None else None,
        "version": route.version,
        "metrics": dict(route.metrics),
        "stops": [stop_to_record(stop) for stop in route.stops],
        "history": [history_to_record(entry) for entry in route.history],
    }


def route_from_record(record: dict[str, Any]) -> Route:
    origin = record.get("origin")
    # Append order is the audit order; timestamps need not be monotonic.
    history = [history_from_record(item) for item in record.get("history") or []]
    stops = [stop_from_record(item) for item in record.get("stops") or []]
    return Route(
        id=str(record["id"]),
        driver_id=str(record["driver_id"]),
        created_at=_parse_dt(record["created_at"]),
        updated_at=_parse_dt(record.get("updated_at") or record["created_at"]),
        shift_date=_parse_date(record["shift_date"]),
        stops=stops,
        history=history,
        total_distance_km=float(record.get("total_distance_km") or 0.0),
        total_time_min=float(record.get("total_time_min") or 0.0),
        completed_distance_km=float(record.get("completed_distance_km") or 0.0),
        completed_time_min=float(record.get("completed_time_min") or 0.0),
        origin=(float(origin[0]), float(origin[1])) if origin else None,
        ended_at=_parse_dt(record.get("ended_at")),
        version=int(record.get("version") or 0),
        metrics=dict(record.get("metrics") or {}),
    )
