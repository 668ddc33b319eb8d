# trip_engine/services/trips/dependencies.py
"""
Зависимости Trip Service.
Все сервисы собираются явно в lifespan и хранятся в app.state, без глобальных синглтонов.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import Header, HTTPException, Request, status

from trip_engine.common.constants import TypeMsg
from trip_engine.common.logger import log_info, log_warning
from trip_engine.core.trips.repository import TripRepository
from trip_engine.core.trips.service import TripOrchestrator
from trip_engine.infra.database import DatabaseManager
from trip_engine.infra.trip_notifier import TripNotifier


@dataclass
class TripContainer:
    """Связанные сервисы одного экземпляра приложения."""

    orchestrator: TripOrchestrator
    notifier: TripNotifier
    repository: TripRepository
    db: Optional[DatabaseManager] = None
    # Объекты с async close() (HTTP клиенты шлюзов)
    closeables: list[Any] = field(default_factory=list)

    async def close(self) -> None:
        """Закрытие всех ресурсов. Сбой одного не мешает закрыть остальные."""
        self.notifier.close()

        for resource in self.closeables:
            try:
                await resource.close()
            except Exception as e:
                await log_warning(f"Ошибка закрытия {resource.__class__.__name__}: {e}")

        if self.db is not None:
            try:
                await self.db.disconnect()
            except Exception as e:
                await log_warning(f"Ошибка закрытия PostgreSQL: {e}")


async def init_dependencies() -> TripContainer:
    """Инициализация всех зависимостей сервиса по конфигу."""
    from trip_engine.config import settings
    from trip_engine.core.trips.memory import InMemoryTripRepository
    from trip_engine.core.trips.repository import PostgresTripRepository
    from trip_engine.infra.gateways import HttpDriverMatcher, HttpUserDirectory

    db: Optional[DatabaseManager] = None
    repository: TripRepository
    if settings.database.STORAGE_BACKEND == "postgres":
        db = DatabaseManager.from_settings()
        await db.connect()
        await db.apply_migrations()
        repository = PostgresTripRepository(db)
        await log_info("PostgreSQL подключён", type_msg=TypeMsg.DEBUG)
    else:
        repository = InMemoryTripRepository()
        await log_info("Хранилище в памяти процесса (STORAGE_BACKEND=memory)", type_msg=TypeMsg.WARNING)

    users = HttpUserDirectory(
        base_url=settings.gateways.USERS_SERVICE_URL,
        timeout=settings.gateways.GATEWAY_TIMEOUT,
    )
    drivers = HttpDriverMatcher(
        base_url=settings.gateways.DRIVERS_SERVICE_URL,
        timeout=settings.gateways.GATEWAY_TIMEOUT,
    )
    notifier = TripNotifier(queue_size=settings.notifier.SUBSCRIBER_QUEUE_SIZE)

    orchestrator = TripOrchestrator.from_settings(repository, notifier, users, drivers)

    await log_info("Trip Service инициализирован", type_msg=TypeMsg.INFO)

    return TripContainer(
        orchestrator=orchestrator,
        notifier=notifier,
        repository=repository,
        db=db,
        closeables=[users, drivers],
    )


# =============================================================================
# FASTAPI DEPENDS
# =============================================================================

def get_container(request: Request) -> TripContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise RuntimeError("TripContainer не инициализирован")
    return container


def get_orchestrator(request: Request) -> TripOrchestrator:
    return get_container(request).orchestrator


def require_bearer(authorization: str = Header("", alias="Authorization")) -> None:
    """
    Заглушка аутентификации: нужен заголовок Bearer.
    Подпись токена не проверяется.
    """
    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


def actor_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> Optional[str]:
    """ID пользователя, от имени которого выполняется запрос."""
    return x_user_id or None
