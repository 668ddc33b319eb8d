# trip_engine/core/trips/memory.py
"""
Репозиторий поездок в памяти процесса.
Используется бэкендом STORAGE_BACKEND=memory и в тестах.
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, Optional

from trip_engine.common.constants import AssignmentState, TripStatus
from trip_engine.core.trips.models import Trip, TripAssignment, TripEvent, TripRating, utcnow
from trip_engine.core.trips.repository import MUTABLE_TRIP_FIELDS


class InMemoryTripRepository:
    """
    Хранилище на словарях под asyncio.Lock.
    Наружу отдаются копии, чтобы вызывающий код не мутировал состояние.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._trips: dict[str, Trip] = {}
        self._assignments: dict[tuple[str, str], TripAssignment] = {}
        self._events: dict[str, list[TripEvent]] = {}
        self._ratings: dict[str, TripRating] = {}

    async def create_trip(self, trip: Trip) -> Trip:
        async with self._lock:
            if trip.id in self._trips:
                raise ValueError(f"Поездка {trip.id} уже существует")
            self._trips[trip.id] = trip.model_copy(deep=True)
            return trip.model_copy(deep=True)

    async def get_trip(self, trip_id: str) -> Optional[Trip]:
        async with self._lock:
            trip = self._trips.get(trip_id)
            return trip.model_copy(deep=True) if trip else None

    async def update_trip_status(
        self,
        trip_id: str,
        expected: Iterable[TripStatus],
        status: TripStatus,
        **fields: Any,
    ) -> Optional[Trip]:
        unknown = set(fields) - MUTABLE_TRIP_FIELDS
        if unknown:
            raise ValueError(f"Недопустимые поля для обновления: {sorted(unknown)}")

        async with self._lock:
            trip = self._trips.get(trip_id)
            if trip is None or trip.status not in set(expected):
                return None

            updated = trip.model_copy(
                update={**fields, "status": status, "updated_at": utcnow()}, deep=True
            )
            self._trips[trip_id] = updated
            return updated.model_copy(deep=True)

    async def create_assignments(
        self, trip_id: str, driver_ids: list[str], ttl_seconds: int
    ) -> int:
        created = 0
        async with self._lock:
            for driver_id in driver_ids:
                key = (trip_id, driver_id)
                if key in self._assignments:
                    continue
                self._assignments[key] = TripAssignment(
                    trip_id=trip_id, driver_id=driver_id, ttl_seconds=ttl_seconds
                )
                created += 1
        return created

    async def update_assignments(
        self,
        trip_id: str,
        driver_id: str,
        state: AssignmentState,
        only_from: Optional[Iterable[AssignmentState]] = None,
    ) -> int:
        allowed = set(only_from) if only_from is not None else None
        async with self._lock:
            assignment = self._assignments.get((trip_id, driver_id))
            if assignment is None:
                return 0
            if allowed is not None and assignment.state not in allowed:
                return 0
            if state == AssignmentState.CLAIMED and any(
                a.state == AssignmentState.CLAIMED and a.trip_id == trip_id and a.driver_id != driver_id
                for a in self._assignments.values()
            ):
                raise ValueError(f"У поездки {trip_id} уже есть CLAIMED-приглашение")

            self._assignments[(trip_id, driver_id)] = assignment.model_copy(
                update={"state": state, "responded_at": utcnow()}
            )
            return 1

    async def list_assignments(self, trip_id: str) -> list[TripAssignment]:
        async with self._lock:
            return [
                a.model_copy() for (t_id, _), a in self._assignments.items() if t_id == trip_id
            ]

    async def append_event(
        self, trip_id: str, type: str, payload: dict[str, Any]
    ) -> TripEvent:
        event = TripEvent(trip_id=trip_id, type=type, payload=dict(payload))
        async with self._lock:
            self._events.setdefault(trip_id, []).append(event)
        return event.model_copy(deep=True)

    async def list_events(self, trip_id: str) -> list[TripEvent]:
        async with self._lock:
            return [e.model_copy(deep=True) for e in self._events.get(trip_id, [])]

    async def upsert_rating(self, rating: TripRating) -> TripRating:
        async with self._lock:
            existing = self._ratings.get(rating.trip_id)
            if existing is not None:
                rating = rating.model_copy(
                    update={"created_at": existing.created_at, "updated_at": utcnow()}
                )
            self._ratings[rating.trip_id] = rating
            return rating.model_copy()

    async def get_rating(self, trip_id: str) -> Optional[TripRating]:
        async with self._lock:
            rating = self._ratings.get(trip_id)
            return rating.model_copy() if rating else None
