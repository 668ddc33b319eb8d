# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from trip_engine.common.constants import ClaimVerdict  # noqa: E402
from trip_engine.core.pricing import FareEstimator  # noqa: E402
from trip_engine.core.trips.memory import InMemoryTripRepository  # noqa: E402
from trip_engine.core.trips.models import LatLng  # noqa: E402
from trip_engine.core.trips.service import TripOrchestrator  # noqa: E402
from trip_engine.infra.gateways.base import GatewayResult  # noqa: E402
from trip_engine.infra.trip_notifier import TripNotifier  # noqa: E402


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок плоского config.json для тестов."""
    return {
        "PROJECT_NAME": "trip_engine_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "ENVIRONMENT": "test",
        "TRIP_SERVICE_HOST": "127.0.0.1",
        "TRIP_SERVICE_PORT": 3103,
        "LOG_LEVEL": "DEBUG",
        "LOG_FORMAT": "json",
        "LOG_TO_FILE": False,
        "STORAGE_BACKEND": "memory",
        "DB_HOST": "localhost",
        "DB_PORT": 5432,
        "DB_NAME": "trips_test",
        "DB_USER": "postgres",
        "USERS_SERVICE_URL": "http://users.test",
        "DRIVERS_SERVICE_URL": "http://drivers.test",
        "GATEWAY_TIMEOUT": 1.5,
        "BASE_FARE": 10000,
        "FARE_PER_KM": 7000,
        "FARE_PER_MINUTE": 500,
        "AVERAGE_SPEED_KMH": 30.0,
        "MIN_FINAL_FARE": 10000,
        "ETA_PICKUP_MIN": 5,
        "DRIVER_SEARCH_RADIUS_M": 3000,
        "MAX_CANDIDATES": 20,
        "INVITE_TTL_SECONDS": 15,
        "SUBSCRIBER_QUEUE_SIZE": 10,
        "SSE_KEEPALIVE_SECONDS": 0.5,
    }


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_db() -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetchval = AsyncMock(return_value=None)
    return db


@pytest.fixture
def repo() -> InMemoryTripRepository:
    return InMemoryTripRepository()


@pytest.fixture
def notifier() -> TripNotifier:
    return TripNotifier(queue_size=10)


@pytest.fixture
def mock_users() -> AsyncMock:
    """Мок сервиса профилей: профиль существует."""
    users = AsyncMock()
    users.profile_exists = AsyncMock(return_value=GatewayResult.success(True))
    return users


@pytest.fixture
def mock_drivers() -> AsyncMock:
    """Мок сервиса водителей: три кандидата, захват всегда успешен."""
    drivers = AsyncMock()
    drivers.nearby_drivers = AsyncMock(
        return_value=GatewayResult.success(["driver-1", "driver-2", "driver-3"])
    )
    drivers.prepare_assign = AsyncMock(return_value=GatewayResult.success(True))
    drivers.claim_trip = AsyncMock(return_value=GatewayResult.success(ClaimVerdict.ACCEPTED))
    return drivers


@pytest.fixture
def orchestrator(
    repo: InMemoryTripRepository,
    notifier: TripNotifier,
    mock_users: AsyncMock,
    mock_drivers: AsyncMock,
) -> TripOrchestrator:
    return TripOrchestrator(repo, notifier, mock_users, mock_drivers, FareEstimator())


# =============================================================================
# ФИКСТУРЫ МОДЕЛЕЙ
# =============================================================================

@pytest.fixture
def origin() -> LatLng:
    """Точка подачи (Хошимин, район 10)."""
    return LatLng(lat=10.762622, lng=106.660172)


@pytest.fixture
def destination() -> LatLng:
    return LatLng(lat=10.776530, lng=106.700981)
