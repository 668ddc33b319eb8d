# trip_engine/common/errors.py
"""
Иерархия ошибок сервиса поездок.
Каждая ошибка несёт машинный код и HTTP-статус для транспортного слоя.
"""

from __future__ import annotations

from typing import Any


class TripError(Exception):
    """Базовая ошибка домена поездок."""

    code: str = "INTERNAL_ERROR"
    http_status: int = 500

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Сериализует ошибку в формат ErrorResponse."""
        return {
            "error_code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(TripError):
    """Некорректный или неполный ввод. Повтор бессмысленен."""
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(TripError):
    """Поездка не найдена."""
    code = "NOT_FOUND"
    http_status = 404


class InvalidStateError(TripError):
    """Операция недопустима для текущего статуса поездки."""
    code = "INVALID_STATE"
    http_status = 400


class NotCompletedError(TripError):
    """Оценить можно только завершённую поездку."""
    code = "NOT_COMPLETED"
    http_status = 400


class UpstreamUnavailableError(TripError):
    """Хранилище или внешний сервис недоступен."""
    code = "UPSTREAM_UNAVAILABLE"
    http_status = 503


# Не исключение: водитель проиграл гонку за поездку
CLAIM_REJECTED = "CLAIM_REJECTED"
