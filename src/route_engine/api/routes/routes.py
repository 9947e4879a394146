"""Driver route endpoints."""

from __future__ import annotations

import logging
from typing import Callable, List, TypeVar

from fastapi import APIRouter, Depends, HTTPException, status

from ...schemas.routing import (
    CompleteDeliveryRequest,
    CreateRouteRequest,
    DeliveryOrderModel,
    EndShiftResponse,
    ReasonRequest,
    RecalculateRequest,
    RouteModel,
)
from ...services.routing.errors import RouteEngineError, RouteNotFound, StoreError
from ...services.routing.manager import RouteManager, get_route_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["routes"])

T = TypeVar("T")

_STATUS_BY_KIND = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "invalid_state": 422,
    "invalid_request": status.HTTP_400_BAD_REQUEST,
}


def _call(action: str, operation: Callable[[], T]) -> T:
    try:
        return operation()
    except RouteEngineError as exc:
        raise HTTPException(status_code=_STATUS_BY_KIND[exc.kind], detail=str(exc)) from exc
    except StoreError as exc:
        logger.error(f"Route store unavailable while trying to {action}: {exc}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception(f"Error trying to {action}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {action}: {str(exc)}",
        ) from exc


@router.get("/drivers/{driver_id}/route", response_model=RouteModel)
def get_current_route(driver_id: str, manager: RouteManager = Depends(get_route_manager)) -> RouteModel:
    """The driver's active route for the current shift."""
    route = _call("load current route", lambda: manager.get_current_route(driver_id))
    if route is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(RouteNotFound(driver_id, driver=True)))
    return RouteModel.from_domain(route)


@router.post("/drivers/{driver_id}/route", response_model=RouteModel, status_code=status.HTTP_201_CREATED)
def create_route(
    driver_id: str,
    payload: CreateRouteRequest,
    manager: RouteManager = Depends(get_route_manager),
) -> RouteModel:
    orders = [order.to_domain() for order in payload.orders]
    origin = payload.origin.as_coordinates() if payload.origin else None
    route = _call("create route", lambda: manager.create_optimized_route(driver_id, orders, origin))
    return RouteModel.from_domain(route)


@router.get("/drivers/{driver_id}/routes", response_model=List[RouteModel])
def list_driver_routes(driver_id: str, manager: RouteManager = Depends(get_route_manager)) -> List[RouteModel]:
    """Every route the driver has had, archived ones included, oldest first."""
    routes = _call("list routes", lambda: manager.list_driver_routes(driver_id))
    return [RouteModel.from_domain(route) for route in routes]


@router.get("/routes/{route_id}", response_model=RouteModel)
def get_route(route_id: str, manager: RouteManager = Depends(get_route_manager)) -> RouteModel:
    return RouteModel.from_domain(_call("load route", lambda: manager.get_route(route_id)))


@router.post("/routes/{route_id}/stops/{order_ref}/complete", response_model=RouteModel)
def complete_delivery(
    route_id: str,
    order_ref: str,
    payload: CompleteDeliveryRequest | None = None,
    manager: RouteManager = Depends(get_route_manager),
) -> RouteModel:
    payload = payload or CompleteDeliveryRequest()
    route = _call(
        "complete delivery",
        lambda: manager.complete_delivery(
            route_id,
            order_ref,
            actual_time_min=payload.actual_time_min,
            actual_distance_km=payload.actual_distance_km,
        ),
    )
    return RouteModel.from_domain(route)


@router.post("/routes/{route_id}/stops/{order_ref}/fail", response_model=RouteModel)
def fail_delivery(
    route_id: str,
    order_ref: str,
    payload: ReasonRequest,
    manager: RouteManager = Depends(get_route_manager),
) -> RouteModel:
    route = _call("record failed delivery", lambda: manager.fail_delivery(route_id, order_ref, payload.reason))
    return RouteModel.from_domain(route)


@router.post("/routes/{route_id}/stops/{order_ref}/cancel", response_model=RouteModel)
def cancel_delivery(
    route_id: str,
    order_ref: str,
    payload: ReasonRequest,
    manager: RouteManager = Depends(get_route_manager),
) -> RouteModel:
    route = _call("cancel delivery", lambda: manager.cancel_delivery(route_id, order_ref, payload.reason))
    return RouteModel.from_domain(route)


@router.post("/routes/{route_id}/stops", response_model=RouteModel)
def add_delivery(
    route_id: str,
    payload: DeliveryOrderModel,
    manager: RouteManager = Depends(get_route_manager),
) -> RouteModel:
    route = _call("add delivery", lambda: manager.add_delivery_to_route(route_id, payload.to_domain()))
    return RouteModel.from_domain(route)


@router.post("/routes/{route_id}/recalculate", response_model=RouteModel)
def recalculate_route(
    route_id: str,
    payload: RecalculateRequest,
    manager: RouteManager = Depends(get_route_manager),
) -> RouteModel:
    orders = [order.to_domain() for order in payload.pending_orders]
    origin = payload.origin.as_coordinates() if payload.origin else None
    route = _call("recalculate route", lambda: manager.recalculate_route(route_id, orders, origin))
    return RouteModel.from_domain(route)


@router.post("/routes/{route_id}/end", response_model=EndShiftResponse)
def end_shift(route_id: str, manager: RouteManager = Depends(get_route_manager)) -> EndShiftResponse:
    _call("end shift", lambda: manager.end_shift(route_id))
    return EndShiftResponse(route_id=route_id)
