"""Supabase persistence for route aggregates.

Routes live in ``driver_routes``, ``route_stops`` and ``route_history``. The
aggregate is read and written through the PL/pgSQL functions defined in
``sql/route_engine_schema.sql`` so a load is one snapshot and a save is one
transaction guarded by the version check.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from ..db.supabase import get_supabase_client
from ..models.domain import Route
from ..services.routing.errors import (
    ConcurrencyConflict,
    RouteAlreadyActive,
    RouteArchived,
    StoreError,
)
from .records import route_from_record, route_to_record
from .store import RouteStore

logger = logging.getLogger(__name__)


class SupabaseRouteStore(RouteStore):
    def __init__(self, client: Any | None = None) -> None:
        self._client = client

    @property
    def client(self) -> Any:
        client = self._client or get_supabase_client()
        if client is None:
            raise StoreError("Supabase is not configured; set ROUTE_ENGINE_SUPABASE_URL and ROUTE_ENGINE_SUPABASE_KEY.")
        return client

    def _rpc(self, name: str, params: dict[str, Any]) -> Any:
        try:
            response = self.client.rpc(name, params).execute()
        except StoreError:
            raise
        except Exception as e:
            logger.error(f"Supabase call {name} failed: {e}")
            raise StoreError(f"Route database call '{name}' failed: {e}") from e
        return response.data

    def _load(self, params: dict[str, Any]) -> Optional[Route]:
        data = self._rpc("load_driver_route", params)
        if isinstance(data, list):
            data = data[0] if data else None
        if not data:
            return None
        return route_from_record(data)

    def get(self, route_id: str) -> Optional[Route]:
        # Route ids are UUID columns; anything else cannot name a stored route.
        try:
            uuid.UUID(str(route_id))
        except ValueError:
            return None
        return self._load({"p_route_id": route_id, "p_driver_id": None})

    def find_active(self, driver_id: str) -> Optional[Route]:
        return self._load({"p_route_id": None, "p_driver_id": driver_id})

    def list_for_driver(self, driver_id: str) -> list[Route]:
        try:
            response = (
                self.client.table("driver_routes")
                .select("id")
                .eq("driver_id", driver_id)
                .order("created_at")
                .execute()
            )
        except StoreError:
            raise
        except Exception as e:
            logger.error(f"Failed to list routes for driver {driver_id}: {e}")
            raise StoreError(f"Could not list routes for driver '{driver_id}': {e}") from e
        routes = []
        for row in response.data or []:
            route = self.get(str(row["id"]))
            if route is not None:
                routes.append(route)
        return routes

    def insert(self, route: Route) -> Route:
        record = route_to_record(route)
        record["version"] = 1
        result = self._rpc("insert_driver_route", {"p_route": record}) or {}
        if result.get("status") == "conflict":
            raise RouteAlreadyActive(route.driver_id, str(result.get("route_id")))
        if result.get("status") != "ok":
            raise StoreError(f"Unexpected response inserting route '{route.id}': {result}")
        return route_from_record(record)

    def save(self, route: Route, expected_version: int) -> Route:
        record = route_to_record(route)
        record["version"] = expected_version + 1
        result = self._rpc(
            "save_driver_route",
            {"p_route": record, "p_expected_version": expected_version},
        ) or {}
        status = result.get("status")
        if status == "conflict":
            raise ConcurrencyConflict(route.id, expected_version, result.get("version"))
        if status == "missing":
            raise ConcurrencyConflict(route.id, expected_version)
        if status == "archived":
            raise RouteArchived(route.id)
        if status != "ok":
            raise StoreError(f"Unexpected response saving route '{route.id}': {result}")
        return route_from_record(record)
