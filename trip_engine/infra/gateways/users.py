# trip_engine/infra/gateways/users.py
"""
HTTP-клиент сервиса пользователей.
"""

from __future__ import annotations

from typing import Optional

import httpx

from trip_engine.common.logger import log_warning
from trip_engine.infra.gateways.base import GatewayResult


class HttpUserDirectory:
    """Проверка существования профиля через users_service."""

    def __init__(
        self,
        base_url: str = "http://user-service:8084",
        timeout: float = 3.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        # HTTP клиент с таймаутами
        self.http = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        """Закрыть HTTP клиент."""
        await self.http.aclose()

    async def profile_exists(self, user_id: str) -> GatewayResult[bool]:
        """
        200 → профиль есть, 404 → профиля нет.
        Любой другой ответ или сетевой сбой даёт False с предупреждением.
        """
        try:
            response = await self.http.get(f"{self.base_url}/api/v1/users/{user_id}")
        except httpx.HTTPError as e:
            warning = f"users_service unavailable: {e.__class__.__name__}"
            await log_warning(f"Профиль {user_id} не проверен: {warning}")
            return GatewayResult.fallback(False, warning)

        if response.status_code == 200:
            return GatewayResult.success(True)
        if response.status_code == 404:
            return GatewayResult.success(False)

        warning = f"users_service responded {response.status_code}"
        await log_warning(f"Профиль {user_id} не проверен: {warning}")
        return GatewayResult.fallback(False, warning)
