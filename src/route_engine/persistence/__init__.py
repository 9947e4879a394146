"""Route stores and the factory that picks one from settings."""

from __future__ import annotations

from ..config import settings
from .store import InMemoryRouteStore, RecordRouteStore, RouteStore


def build_route_store(kind: str | None = None) -> RouteStore:
    kind = kind or settings.route_store
    if kind == "memory":
        return InMemoryRouteStore()
    if kind == "file":
        from .filesystem import FileRouteStore

        return FileRouteStore()
    if kind == "supabase":
        from .database import SupabaseRouteStore

        return SupabaseRouteStore()
    raise ValueError(f"Unknown route store '{kind}'.")


__all__ = ["RouteStore", "RecordRouteStore", "InMemoryRouteStore", "build_route_store"]
