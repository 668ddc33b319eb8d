# trip_engine/config/loader.py
"""
Загрузчик конфигурации сервиса поездок.
Единственный источник истины: config/config.json.
Адреса, порты и пароли переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json без служебных ключей _comment_*."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    return {k: v for k, v in data.items() if not k.startswith("_comment_")}


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "trip_engine"
    VERSION: str = "0.6.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    RUN_DEV_MODE: bool = True


class DeploymentSettings(BaseModel):
    """Настройки развертывания."""
    TRIP_SERVICE_HOST: str = "0.0.0.0"
    TRIP_SERVICE_PORT: int = 3003


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_FORMAT: str = "colored"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_MAX_BYTES: int = 10485760
    LOG_BACKUP_COUNT: int = 5


class DatabaseSettings(BaseModel):
    """Настройки хранилища (PostgreSQL или память процесса)."""
    STORAGE_BACKEND: str = "postgres"
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "trips"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 2
    DB_MAX_POOL_SIZE: int = 10
    DB_COMMAND_TIMEOUT: int = 30
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @field_validator("STORAGE_BACKEND")
    @classmethod
    def check_backend(cls, v: str) -> str:
        """Допустимы только postgres и memory."""
        v = v.lower()
        if v not in ("postgres", "memory"):
            raise ValueError(f"Неизвестный STORAGE_BACKEND: {v}")
        return v

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class GatewaySettings(BaseModel):
    """Адреса внешних сервисов и таймаут вызовов."""
    USERS_SERVICE_URL: str = "http://user-service:8084"
    DRIVERS_SERVICE_URL: str = "http://driver-stream:8091"
    GATEWAY_TIMEOUT: float = Field(3.0, gt=0)


class FareSettings(BaseModel):
    """Тарифы в минимальных единицах валюты."""
    BASE_FARE: int = 10000
    FARE_PER_KM: int = 7000
    FARE_PER_MINUTE: int = 500
    AVERAGE_SPEED_KMH: float = Field(30.0, gt=0)
    MIN_FINAL_FARE: int = 10000
    ETA_PICKUP_MIN: int = 5


class SearchSettings(BaseModel):
    """Параметры поиска водителей."""
    DRIVER_SEARCH_RADIUS_M: int = 3000
    MAX_CANDIDATES: int = 20
    INVITE_TTL_SECONDS: int = 15


class NotifierSettings(BaseModel):
    """Параметры живых уведомлений о поездке."""
    SUBSCRIBER_QUEUE_SIZE: int = Field(100, ge=1)
    SSE_KEEPALIVE_SECONDS: float = Field(15.0, gt=0)


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    gateways: GatewaySettings = Field(default_factory=GatewaySettings)
    fares: FareSettings = Field(default_factory=FareSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    notifier: NotifierSettings = Field(default_factory=NotifierSettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        """
        Раскладывает плоский словарь config.json по секциям.
        Переменные окружения имеют приоритет для адресов и секретов.
        """
        def pick(model: type[BaseModel], env_keys: tuple[str, ...] = ()) -> dict[str, Any]:
            values = {k: data[k] for k in model.model_fields if k in data}
            for key in env_keys:
                env_value = os.getenv(key)
                if env_value:
                    values[key] = env_value
            return values

        return cls(
            system=SystemSettings(**pick(SystemSettings, ("ENVIRONMENT",))),
            deployment=DeploymentSettings(
                **pick(DeploymentSettings, ("TRIP_SERVICE_HOST", "TRIP_SERVICE_PORT"))
            ),
            logging=LoggingSettings(**pick(LoggingSettings, ("LOG_LEVEL", "LOG_FORMAT"))),
            database=DatabaseSettings(
                **pick(
                    DatabaseSettings,
                    ("STORAGE_BACKEND", "DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD"),
                )
            ),
            gateways=GatewaySettings(
                **pick(GatewaySettings, ("USERS_SERVICE_URL", "DRIVERS_SERVICE_URL", "GATEWAY_TIMEOUT"))
            ),
            fares=FareSettings(**pick(FareSettings)),
            search=SearchSettings(**pick(SearchSettings)),
            notifier=NotifierSettings(**pick(NotifierSettings)),
        )

    @classmethod
    def from_config_json(cls) -> "Settings":
        """Создаёт объект Settings из config.json."""
        return cls.from_dict(load_config_json())


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Перед чтением config.json подгружает .env из корня проекта.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
