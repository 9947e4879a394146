"""Route request/response schemas."""

from __future__ import annotations

from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from ..models.domain import DeliveryOrder, Route


class OriginModel(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    def as_coordinates(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


class DeliveryOrderModel(BaseModel):
    order_ref: str = Field(..., min_length=1, description="Caller's identifier for the order")
    priority: Literal["low", "normal", "high", "urgent"] = "normal"
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    address: Optional[str] = None

    @model_validator(mode="after")
    def _both_or_neither(self) -> "DeliveryOrderModel":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be given together")
        return self

    def to_domain(self) -> DeliveryOrder:
        return DeliveryOrder(
            order_ref=self.order_ref,
            priority=self.priority,
            latitude=self.latitude,
            longitude=self.longitude,
            address=self.address,
        )


class CreateRouteRequest(BaseModel):
    orders: List[DeliveryOrderModel] = Field(default_factory=list)
    origin: Optional[OriginModel] = Field(
        default=None,
        description="Driver's starting location. Defaults to the first order with coordinates.",
    )


class CompleteDeliveryRequest(BaseModel):
    actual_time_min: Optional[float] = Field(default=None, ge=0)
    actual_distance_km: Optional[float] = Field(default=None, ge=0)


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class RecalculateRequest(BaseModel):
    pending_orders: List[DeliveryOrderModel] = Field(default_factory=list)
    origin: Optional[OriginModel] = None


class StopModel(BaseModel):
    order_ref: str
    sequence_index: int
    status: str
    priority: str
    estimated_distance_km: float
    estimated_time_min: float
    estimate_resolved: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    actual_distance_km: Optional[float] = None
    actual_time_min: Optional[float] = None
    completed_at: Optional[datetime] = None
    reason: Optional[str] = None


class HistoryEntryModel(BaseModel):
    id: str
    timestamp: datetime
    action: str
    description: str
    stop_count: int
    total_distance_km: float
    total_time_min: float
    metadata: dict = Field(default_factory=dict)


class WarningModel(BaseModel):
    order_ref: str
    message: str


class RouteModel(BaseModel):
    id: str
    driver_id: str
    status: Literal["active", "completed"]
    shift_date: date
    created_at: datetime
    updated_at: datetime
    ended_at: Optional[datetime] = None
    version: int
    origin: Optional[OriginModel] = None
    total_distance_km: float
    total_time_min: float
    completed_distance_km: float
    completed_time_min: float
    stops: List[StopModel]
    history: List[HistoryEntryModel]
    metrics: dict = Field(default_factory=dict)
    warnings: List[WarningModel] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, route: Route) -> "RouteModel":
        return cls(
            id=route.id,
            driver_id=route.driver_id,
            status="active" if route.is_active else "completed",
            shift_date=route.shift_date,
            created_at=route.created_at,
            updated_at=route.updated_at,
            ended_at=route.ended_at,
            version=route.version,
            origin=OriginModel(latitude=route.origin[0], longitude=route.origin[1]) if route.origin else None,
            total_distance_km=route.total_distance_km,
            total_time_min=route.total_time_min,
            completed_distance_km=route.completed_distance_km,
            completed_time_min=route.completed_time_min,
            stops=[
                StopModel(
                    order_ref=stop.order_ref,
                    sequence_index=stop.sequence_index,
                    status=stop.status,
                    priority=stop.priority,
                    estimated_distance_km=stop.estimated_distance_km,
                    estimated_time_min=stop.estimated_time_min,
                    estimate_resolved=stop.estimate_resolved,
                    latitude=stop.latitude,
                    longitude=stop.longitude,
                    address=stop.address,
                    actual_distance_km=stop.actual_distance_km,
                    actual_time_min=stop.actual_time_min,
                    completed_at=stop.completed_at,
                    reason=stop.reason,
                )
                for stop in route.stops
            ],
            history=[
                HistoryEntryModel(
                    id=entry.id,
                    timestamp=entry.timestamp,
                    action=entry.action,
                    description=entry.description,
                    stop_count=entry.stop_count,
                    total_distance_km=entry.total_distance_km,
                    total_time_min=entry.total_time_min,
                    metadata=entry.metadata,
                )
                for entry in route.history
            ],
            metrics=route.metrics,
            warnings=[WarningModel(order_ref=w.order_ref, message=w.message) for w in route.warnings],
        )


class EndShiftResponse(BaseModel):
    route_id: str
    status: Literal["completed"] = "completed"
