# trip_engine/core/trips/models.py
"""
Модели данных поездок.
Поля в snake_case, в JSON отдаются в camelCase (алиасы).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from trip_engine.common.constants import (
    AssignmentState,
    MatchingStatus,
    TERMINAL_STATUSES,
    TripStatus,
)


def utcnow() -> datetime:
    """Текущее время в UTC."""
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Базовая модель с camelCase-алиасами для внешнего API."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class LatLng(CamelModel):
    """Координаты точки."""

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class FareBreakdown(CamelModel):
    """Составляющие стоимости в минимальных единицах валюты."""

    base: int
    distance: int
    time: int
    total: int


class Quote(CamelModel):
    """Предварительная оценка поездки."""

    distance_km: float
    duration_min: int
    eta_pickup_min: int
    fare: FareBreakdown


class Trip(CamelModel):
    """Модель поездки."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="UUID поездки")
    passenger_id: str
    driver_id: Optional[str] = None

    # Маршрут
    origin_lat: float
    origin_lng: float
    dest_lat: float
    dest_lng: float
    note: Optional[str] = None
    payment_method_id: Optional[str] = None

    status: TripStatus = TripStatus.DRIVER_SEARCHING

    # Котировка на момент создания
    quote_distance_km: float
    quote_duration_min: int
    quote_fare_total: int

    # Фактические значения
    actual_distance_km: Optional[float] = None
    actual_duration_min: Optional[int] = None
    final_fare_total: Optional[int] = None

    # Отмена
    cancel_reason_code: Optional[str] = None
    cancel_note: Optional[str] = None
    canceled_by: Optional[str] = None

    # Временные метки
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    @property
    def origin(self) -> LatLng:
        return LatLng(lat=self.origin_lat, lng=self.origin_lng)

    @property
    def destination(self) -> LatLng:
        return LatLng(lat=self.dest_lat, lng=self.dest_lng)

    @property
    def is_terminal(self) -> bool:
        """Поездка в конечном статусе."""
        return self.status in TERMINAL_STATUSES


class TripAssignment(CamelModel):
    """Приглашение одного водителя на одну поездку."""

    trip_id: str
    driver_id: str
    state: AssignmentState = AssignmentState.INVITED
    ttl_seconds: int
    created_at: datetime = Field(default_factory=utcnow)
    responded_at: Optional[datetime] = None


class TripEvent(CamelModel):
    """Неизменяемая запись журнала поездки."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    trip_id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class TripRating(CamelModel):
    """Оценка поездки (одна на поездку)."""

    trip_id: str
    rater_id: str
    driver_id: str
    stars: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# РЕЗУЛЬТАТЫ ОПЕРАЦИЙ
# =============================================================================

class Tracking(CamelModel):
    """Куда подписываться на живые события поездки."""

    subscription_path: str


class MatchingReport(CamelModel):
    """Итог запуска поиска водителей."""

    status: MatchingStatus
    candidates: int = 0
    warnings: list[str] = Field(default_factory=list)


class TripCreated(Trip):
    """Созданная поездка с трекингом и итогом поиска."""

    tracking: Tracking
    matching: MatchingReport


class AcceptResult(CamelModel):
    """Результат попытки водителя принять поездку."""

    ok: bool
    reason: Optional[str] = None


class FinishResult(CamelModel):
    """Результат завершения поездки."""

    final_fare_total: int
    ok: bool = True
