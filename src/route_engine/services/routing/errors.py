"""Typed failures raised by route operations and stores."""

from __future__ import annotations

from typing import Literal

ErrorKind = Literal["not_found", "conflict", "invalid_state", "invalid_request"]


class RouteEngineError(Exception):
    """Base class for validation failures. Raised before any state changes."""

    kind: ErrorKind = "invalid_request"


class RouteNotFound(RouteEngineError):
    kind = "not_found"

    def __init__(self, route_ref: str, *, driver: bool = False) -> None:
        self.route_ref = route_ref
        if driver:
            message = f"Driver '{route_ref}' has no active route for the current shift."
        else:
            message = f"Route '{route_ref}' does not exist."
        super().__init__(message)


class StopNotFound(RouteEngineError):
    kind = "not_found"

    def __init__(self, route_id: str, order_ref: str) -> None:
        self.route_id = route_id
        self.order_ref = order_ref
        super().__init__(f"Order '{order_ref}' is not a stop on route '{route_id}'.")


class RouteAlreadyActive(RouteEngineError):
    kind = "conflict"

    def __init__(self, driver_id: str, route_id: str) -> None:
        self.driver_id = driver_id
        self.route_id = route_id
        super().__init__(
            f"Driver '{driver_id}' already has an active route ({route_id}); end it before starting a new one."
        )


class ConcurrencyConflict(RouteEngineError):
    """The stored route changed between load and save. Reload and retry."""

    kind = "conflict"

    def __init__(self, route_id: str, expected_version: int, actual_version: int | None = None) -> None:
        self.route_id = route_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Route '{route_id}' was modified concurrently (expected version {expected_version}, "
            f"found {actual_version if actual_version is not None else 'unknown'}); reload and retry."
        )


class RouteArchived(RouteEngineError):
    kind = "invalid_state"

    def __init__(self, route_id: str) -> None:
        self.route_id = route_id
        super().__init__(f"Route '{route_id}' has ended and is archived; it can no longer be changed.")


class InvalidTransition(RouteEngineError):
    kind = "invalid_state"

    def __init__(self, route_id: str, order_ref: str, status: str, target: str) -> None:
        self.route_id = route_id
        self.order_ref = order_ref
        self.status = status
        self.target = target
        super().__init__(
            f"Stop for order '{order_ref}' on route '{route_id}' is already {status} and cannot become {target}."
        )


class InvalidRequest(RouteEngineError):
    kind = "invalid_request"


class StoreError(Exception):
    """The persistence backend failed; nothing was written."""
