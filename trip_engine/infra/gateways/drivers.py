# trip_engine/infra/gateways/drivers.py
"""
HTTP-клиент сервиса водителей (driver-stream).
Геопоиск кандидатов, рассылка приглашений и атомарный захват поездки.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from trip_engine.common.constants import ClaimVerdict
from trip_engine.common.logger import log_warning
from trip_engine.core.trips.models import LatLng
from trip_engine.infra.gateways.base import GatewayResult


class HttpDriverMatcher:
    """Реализация DriverMatcher поверх REST API driver-stream."""

    def __init__(
        self,
        base_url: str = "http://driver-stream:8091",
        timeout: float = 3.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        """Закрыть HTTP клиент."""
        await self.http.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self.http.post(f"{self.base_url}{path}", json=payload)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("unexpected response body")
        return data

    async def nearby_drivers(
        self, location: LatLng, radius_m: int, limit: int
    ) -> GatewayResult[list[str]]:
        """Водители рядом с точкой подачи. При сбое пустой список."""
        try:
            data = await self._post(
                "/api/v1/drivers/nearby",
                {
                    "location": {"lat": location.lat, "lng": location.lng},
                    "radius": radius_m,
                    "limit": limit,
                },
            )
            driver_ids = [str(d["driver_id"]) for d in data.get("drivers", [])]
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            warning = f"nearby drivers lookup failed: {e.__class__.__name__}"
            await log_warning(f"Поиск водителей не удался: {e}")
            return GatewayResult.fallback([], warning)

        return GatewayResult.success(driver_ids[:limit])

    async def prepare_assign(
        self, trip_id: str, candidate_ids: list[str], ttl_seconds: int
    ) -> GatewayResult[bool]:
        try:
            data = await self._post(
                "/api/v1/assignments/prepare",
                {"trip_id": trip_id, "candidate_ids": candidate_ids, "ttl_seconds": ttl_seconds},
            )
        except (httpx.HTTPError, ValueError) as e:
            warning = f"prepare assign failed: {e.__class__.__name__}"
            await log_warning(f"Приглашения для поездки {trip_id} не разосланы: {e}")
            return GatewayResult.fallback(False, warning)

        return GatewayResult.success(bool(data.get("queued", False)))

    async def claim_trip(self, trip_id: str, driver_id: str) -> GatewayResult[ClaimVerdict]:
        """
        Захват поездки водителем. Арбитр гонки между водителями.
        Сбой или неизвестный ответ трактуются как DECLINED.
        """
        try:
            data = await self._post(
                "/api/v1/assignments/claim",
                {"trip_id": trip_id, "driver_id": driver_id},
            )
            verdict = ClaimVerdict(str(data.get("status", "")).upper())
        except (httpx.HTTPError, ValueError) as e:
            warning = f"claim failed: {e.__class__.__name__}"
            await log_warning(f"Захват поездки {trip_id} водителем {driver_id} не удался: {e}")
            return GatewayResult.fallback(ClaimVerdict.DECLINED, warning)

        return GatewayResult.success(verdict)
