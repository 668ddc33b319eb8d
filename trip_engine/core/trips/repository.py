# trip_engine/core/trips/repository.py
"""
Репозиторий поездок.
Контракт хранилища и реализация поверх PostgreSQL (asyncpg).
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional, Protocol

import asyncpg

from trip_engine.common.constants import AssignmentState, TripStatus
from trip_engine.common.errors import UpstreamUnavailableError
from trip_engine.common.logger import log_error
from trip_engine.core.trips.models import Trip, TripAssignment, TripEvent, TripRating, utcnow
from trip_engine.infra.database import CONNECTION_ERRORS, DatabaseManager


# Колонки trips, которые разрешено менять при переходе статуса
MUTABLE_TRIP_FIELDS: frozenset[str] = frozenset(
    name for name in Trip.model_fields
    if name not in ("id", "passenger_id", "created_at", "status")
)


class TripRepository(Protocol):
    """
    Контракт хранилища поездок.
    Отвечает только за хранение и уникальность. Бизнес-правила живут в оркестраторе.
    """

    async def create_trip(self, trip: Trip) -> Trip: ...

    async def get_trip(self, trip_id: str) -> Optional[Trip]: ...

    async def update_trip_status(
        self,
        trip_id: str,
        expected: Iterable[TripStatus],
        status: TripStatus,
        **fields: Any,
    ) -> Optional[Trip]:
        """Условный update: применяется, только если текущий статус входит в expected."""
        ...

    async def create_assignments(
        self, trip_id: str, driver_ids: list[str], ttl_seconds: int
    ) -> int:
        """Создаёт INVITED-приглашения, пропуская дубликаты. Возвращает число созданных."""
        ...

    async def update_assignments(
        self,
        trip_id: str,
        driver_id: str,
        state: AssignmentState,
        only_from: Optional[Iterable[AssignmentState]] = None,
    ) -> int: ...

    async def list_assignments(self, trip_id: str) -> list[TripAssignment]: ...

    async def append_event(
        self, trip_id: str, type: str, payload: dict[str, Any]
    ) -> TripEvent: ...

    async def list_events(self, trip_id: str) -> list[TripEvent]: ...

    async def upsert_rating(self, rating: TripRating) -> TripRating: ...

    async def get_rating(self, trip_id: str) -> Optional[TripRating]: ...


# Ошибки драйвера, которые означают недоступность хранилища
STORAGE_ERRORS: tuple[type[BaseException], ...] = CONNECTION_ERRORS + (asyncpg.PostgresError,)


class PostgresTripRepository:
    """Репозиторий поездок в PostgreSQL."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Инициализация репозитория.

        Args:
            db: Менеджер базы данных (Dependency Injection)
        """
        self._db = db

    # =========================================================================
    # TRIPS
    # =========================================================================

    async def create_trip(self, trip: Trip) -> Trip:
        """
        Сохраняет новую поездку.

        Raises:
            UpstreamUnavailableError: если запись не удалась
        """
        data = trip.model_dump()
        columns = list(data.keys())
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))

        try:
            row = await self._db.fetchrow(
                f"""
                INSERT INTO trips ({", ".join(columns)})
                VALUES ({placeholders})
                RETURNING *
                """,
                *[self._to_db(data[c]) for c in columns],
            )
        except STORAGE_ERRORS as e:
            await log_error(f"Ошибка создания поездки {trip.id}: {e}")
            raise UpstreamUnavailableError("trip store unavailable") from e

        return self._row_to_trip(row)

    async def get_trip(self, trip_id: str) -> Optional[Trip]:
        try:
            row = await self._db.fetchrow("SELECT * FROM trips WHERE id = $1", trip_id)
        except STORAGE_ERRORS as e:
            await log_error(f"Ошибка получения поездки {trip_id}: {e}")
            raise UpstreamUnavailableError("trip store unavailable") from e

        return self._row_to_trip(row) if row else None

    async def update_trip_status(
        self,
        trip_id: str,
        expected: Iterable[TripStatus],
        status: TripStatus,
        **fields: Any,
    ) -> Optional[Trip]:
        """
        Атомарно меняет статус поездки, если текущий статус входит в expected.

        Returns:
            Обновлённая поездка или None, если статус уже сменился
        """
        unknown = set(fields) - MUTABLE_TRIP_FIELDS
        if unknown:
            raise ValueError(f"Недопустимые поля для обновления: {sorted(unknown)}")

        fields = {**fields, "updated_at": utcnow()}
        assignments = ["status = $3"]
        args: list[Any] = [trip_id, [s.value for s in expected], status.value]
        for name, value in fields.items():
            args.append(self._to_db(value))
            assignments.append(f"{name} = ${len(args)}")

        try:
            row = await self._db.fetchrow(
                f"""
                UPDATE trips
                SET {", ".join(assignments)}
                WHERE id = $1 AND status = ANY($2::text[])
                RETURNING *
                """,
                *args,
            )
        except STORAGE_ERRORS as e:
            await log_error(f"Ошибка обновления статуса поездки {trip_id}: {e}")
            raise UpstreamUnavailableError("trip store unavailable") from e

        return self._row_to_trip(row) if row else None

    # =========================================================================
    # ASSIGNMENTS
    # =========================================================================

    async def create_assignments(
        self, trip_id: str, driver_ids: list[str], ttl_seconds: int
    ) -> int:
        if not driver_ids:
            return 0

        try:
            result = await self._db.execute(
                """
                INSERT INTO trip_assignments (trip_id, driver_id, state, ttl_seconds)
                SELECT $1, d, $3, $4 FROM unnest($2::text[]) AS d
                ON CONFLICT (trip_id, driver_id) DO NOTHING
                """,
                trip_id,
                list(dict.fromkeys(driver_ids)),
                AssignmentState.INVITED.value,
                ttl_seconds,
            )
        except STORAGE_ERRORS as e:
            await log_error(f"Ошибка создания приглашений для поездки {trip_id}: {e}")
            raise UpstreamUnavailableError("assignment store unavailable") from e

        return self._affected(result)

    async def update_assignments(
        self,
        trip_id: str,
        driver_id: str,
        state: AssignmentState,
        only_from: Optional[Iterable[AssignmentState]] = None,
    ) -> int:
        """
        Меняет состояние приглашения водителя.
        only_from ограничивает исходные состояния (например, только INVITED).
        """
        query = """
            UPDATE trip_assignments
            SET state = $3, responded_at = $4
            WHERE trip_id = $1 AND driver_id = $2
        """
        args: list[Any] = [trip_id, driver_id, state.value, utcnow()]
        if only_from is not None:
            query += " AND state = ANY($5::text[])"
            args.append([s.value for s in only_from])

        try:
            result = await self._db.execute(query, *args)
        except STORAGE_ERRORS as e:
            await log_error(f"Ошибка обновления приглашения {trip_id}/{driver_id}: {e}")
            raise UpstreamUnavailableError("assignment store unavailable") from e

        return self._affected(result)

    async def list_assignments(self, trip_id: str) -> list[TripAssignment]:
        try:
            rows = await self._db.fetch(
                """
                SELECT trip_id, driver_id, state, ttl_seconds, created_at, responded_at
                FROM trip_assignments
                WHERE trip_id = $1
                ORDER BY created_at, driver_id
                """,
                trip_id,
            )
        except STORAGE_ERRORS as e:
            await log_error(f"Ошибка чтения приглашений поездки {trip_id}: {e}")
            raise UpstreamUnavailableError("assignment store unavailable") from e

        return [TripAssignment(**dict(row)) for row in rows]

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def append_event(
        self, trip_id: str, type: str, payload: dict[str, Any]
    ) -> TripEvent:
        event = TripEvent(trip_id=trip_id, type=type, payload=payload)

        try:
            await self._db.execute(
                """
                INSERT INTO trip_events (id, trip_id, type, payload, created_at)
                VALUES ($1, $2, $3, $4::jsonb, $5)
                """,
                event.id,
                event.trip_id,
                event.type,
                json.dumps(event.payload, ensure_ascii=False, default=str),
                event.created_at,
            )
        except STORAGE_ERRORS as e:
            await log_error(f"Ошибка записи события {type} поездки {trip_id}: {e}")
            raise UpstreamUnavailableError("event store unavailable") from e

        return event

    async def list_events(self, trip_id: str) -> list[TripEvent]:
        """Журнал поездки в порядке записи."""
        try:
            rows = await self._db.fetch(
                """
                SELECT id, trip_id, type, payload, created_at
                FROM trip_events
                WHERE trip_id = $1
                ORDER BY seq
                """,
                trip_id,
            )
        except STORAGE_ERRORS as e:
            await log_error(f"Ошибка чтения журнала поездки {trip_id}: {e}")
            raise UpstreamUnavailableError("event store unavailable") from e

        events = []
        for row in rows:
            data = dict(row)
            if isinstance(data["payload"], str):
                data["payload"] = json.loads(data["payload"])
            events.append(TripEvent(**data))
        return events

    # =========================================================================
    # RATINGS
    # =========================================================================

    async def upsert_rating(self, rating: TripRating) -> TripRating:
        """Создаёт оценку или обновляет существующую (одна на поездку)."""
        try:
            row = await self._db.fetchrow(
                """
                INSERT INTO trip_ratings (trip_id, rater_id, driver_id, stars, comment)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (trip_id) DO UPDATE
                SET rater_id = EXCLUDED.rater_id,
                    driver_id = EXCLUDED.driver_id,
                    stars = EXCLUDED.stars,
                    comment = EXCLUDED.comment,
                    updated_at = NOW()
                RETURNING trip_id, rater_id, driver_id, stars, comment, created_at, updated_at
                """,
                rating.trip_id,
                rating.rater_id,
                rating.driver_id,
                rating.stars,
                rating.comment,
            )
        except STORAGE_ERRORS as e:
            await log_error(f"Ошибка сохранения оценки поездки {rating.trip_id}: {e}")
            raise UpstreamUnavailableError("rating store unavailable") from e

        return TripRating(**dict(row))

    async def get_rating(self, trip_id: str) -> Optional[TripRating]:
        try:
            row = await self._db.fetchrow(
                """
                SELECT trip_id, rater_id, driver_id, stars, comment, created_at, updated_at
                FROM trip_ratings
                WHERE trip_id = $1
                """,
                trip_id,
            )
        except STORAGE_ERRORS as e:
            await log_error(f"Ошибка чтения оценки поездки {trip_id}: {e}")
            raise UpstreamUnavailableError("rating store unavailable") from e

        return TripRating(**dict(row)) if row else None

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    @staticmethod
    def _to_db(value: Any) -> Any:
        if isinstance(value, TripStatus):
            return value.value
        return value

    @staticmethod
    def _affected(status: str) -> int:
        """Количество строк из статуса команды ('INSERT 0 3' → 3)."""
        try:
            return int(status.split()[-1])
        except (AttributeError, IndexError, ValueError):
            return 0

    @staticmethod
    def _row_to_trip(row: asyncpg.Record) -> Trip:
        """Преобразует запись БД в модель Trip."""
        return Trip(**{k: v for k, v in dict(row).items() if k in Trip.model_fields})
