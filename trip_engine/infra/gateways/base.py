# trip_engine/infra/gateways/base.py
"""
Контракты внешних сервисов и результат best-effort вызова.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, Protocol, TypeVar

from trip_engine.common.constants import ClaimVerdict
from trip_engine.core.trips.models import LatLng

T = TypeVar("T")


@dataclass(frozen=True)
class GatewayResult(Generic[T]):
    """
    Итог вызова внешнего сервиса.
    Шлюзы не выбрасывают исключений: при сбое возвращается значение по умолчанию
    с ok=False и текстом предупреждения.
    """

    value: T
    ok: bool = True
    warning: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return not self.ok

    @classmethod
    def success(cls, value: T) -> "GatewayResult[T]":
        return cls(value=value)

    @classmethod
    def fallback(cls, value: T, warning: str) -> "GatewayResult[T]":
        return cls(value=value, ok=False, warning=warning)


class UserDirectory(Protocol):
    """Сервис профилей пользователей."""

    async def profile_exists(self, user_id: str) -> GatewayResult[bool]: ...


class DriverMatcher(Protocol):
    """Сервис геопоиска водителей и арбитраж захвата поездки."""

    async def nearby_drivers(
        self, location: LatLng, radius_m: int, limit: int
    ) -> GatewayResult[list[str]]: ...

    async def prepare_assign(
        self, trip_id: str, candidate_ids: list[str], ttl_seconds: int
    ) -> GatewayResult[bool]: ...

    async def claim_trip(self, trip_id: str, driver_id: str) -> GatewayResult[ClaimVerdict]:
        """Атомарный захват поездки водителем. Сбой трактуется как DECLINED."""
        ...
