# trip_engine/core/pricing/service.py
"""
Оценка стоимости поездки.
Чистые функции: одинаковый результат для котировки и для создания поездки.
"""

from __future__ import annotations

import math
from typing import Optional

from trip_engine.common.errors import ValidationError
from trip_engine.core.trips.models import FareBreakdown, LatLng, Quote


EARTH_RADIUS_KM = 6371.0


def haversine_km(a: LatLng, b: LatLng) -> float:
    """
    Вычисляет расстояние между двумя точками (в км) по формуле Haversine.
    """
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)

    s = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lng / 2) ** 2
    )

    return EARTH_RADIUS_KM * 2 * math.asin(math.sqrt(s))


class FareEstimator:
    """Калькулятор котировки: расстояние, время и стоимость."""

    def __init__(
        self,
        base_fare: int = 10000,
        fare_per_km: int = 7000,
        fare_per_minute: int = 500,
        average_speed_kmh: float = 30.0,
        eta_pickup_min: int = 5,
    ) -> None:
        self.base_fare = base_fare
        self.fare_per_km = fare_per_km
        self.fare_per_minute = fare_per_minute
        self.average_speed_kmh = average_speed_kmh
        self.eta_pickup_min = eta_pickup_min

    @classmethod
    def from_settings(cls) -> "FareEstimator":
        """Создаёт калькулятор с тарифами из конфига."""
        from trip_engine.config import settings

        return cls(
            base_fare=settings.fares.BASE_FARE,
            fare_per_km=settings.fares.FARE_PER_KM,
            fare_per_minute=settings.fares.FARE_PER_MINUTE,
            average_speed_kmh=settings.fares.AVERAGE_SPEED_KMH,
            eta_pickup_min=settings.fares.ETA_PICKUP_MIN,
        )

    def quote(self, origin: Optional[LatLng], destination: Optional[LatLng]) -> Quote:
        """
        Рассчитывает котировку поездки.

        Args:
            origin: Точка подачи
            destination: Точка назначения

        Returns:
            Котировка с разбивкой стоимости

        Raises:
            ValidationError: если не задана одна из точек
        """
        if origin is None or destination is None:
            raise ValidationError("origin & destination are required")

        km = haversine_km(origin, destination)
        duration = math.ceil(km / self.average_speed_kmh * 60)

        distance_fare = math.ceil(km * self.fare_per_km)
        time_fare = duration * self.fare_per_minute

        return Quote(
            distance_km=round(km, 2),
            duration_min=duration,
            eta_pickup_min=self.eta_pickup_min,
            fare=FareBreakdown(
                base=self.base_fare,
                distance=distance_fare,
                time=time_fare,
                total=self.base_fare + distance_fare + time_fare,
            ),
        )
