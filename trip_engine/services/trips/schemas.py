# trip_engine/services/trips/schemas.py
"""
Модели запросов и ответов HTTP API поездок.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from trip_engine.core.trips.models import CamelModel, LatLng


class QuoteRequest(CamelModel):
    """Запрос котировки. Точки опциональны: их отсутствие даёт VALIDATION_ERROR."""

    origin: Optional[LatLng] = None
    destination: Optional[LatLng] = None
    service_type: Optional[str] = None


class CreateTripRequest(CamelModel):
    origin: Optional[LatLng] = None
    destination: Optional[LatLng] = None
    note: Optional[str] = Field(None, max_length=500)
    payment_method_id: Optional[str] = None


class CancelRequest(CamelModel):
    reason_code: str = Field(..., min_length=1)
    note: Optional[str] = Field(None, max_length=500)


class RateRequest(CamelModel):
    stars: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)


class FinishRequest(CamelModel):
    actual_distance_km: float = Field(..., ge=0)
    actual_duration_min: int = Field(..., ge=0)


class SuccessResponse(CamelModel):
    success: bool = True


class OkResponse(CamelModel):
    ok: bool = True


class ErrorResponse(BaseModel):
    """Стандартный ответ с ошибкой."""

    error_code: str
    message: str
    details: dict[str, Any] | None = None


class HealthStatus(BaseModel):
    """Статус здоровья сервиса."""

    service: str
    status: str = "healthy"  # healthy, degraded, unhealthy
    version: str | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)
    notifier: dict[str, int] = Field(default_factory=dict)
