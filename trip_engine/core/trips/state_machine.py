# trip_engine/core/trips/state_machine.py
"""
State machine поездки.
Все переходы описаны одной таблицей: действие → (исходные статусы, целевой статус,
запись журнала, поле времени, побочные эффекты).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from trip_engine.common.constants import TripEventType, TripStatus
from trip_engine.common.errors import InvalidStateError


class TripAction(str, Enum):
    """Действия, меняющие статус поездки."""
    ACCEPT = "accept"
    ARRIVE = "arrive"
    START = "start"
    FINISH = "finish"
    CANCEL = "cancel"
    EXPIRE = "expire"


@dataclass(frozen=True)
class Transition:
    """Строка таблицы переходов."""
    action: TripAction
    sources: frozenset[TripStatus]
    target: TripStatus
    event_type: str
    timestamp_field: Optional[str] = None
    clears_driver: bool = False


_SEARCHING = frozenset({TripStatus.DRIVER_SEARCHING, TripStatus.DRIVER_ASSIGNED})


class TripStateMachine:
    """
    Таблица допустимых переходов.

    - DRIVER_SEARCHING/DRIVER_ASSIGNED → EN_ROUTE_TO_PICKUP (accept)
    - EN_ROUTE_TO_PICKUP → ARRIVED → IN_TRIP → COMPLETED
    - всё, кроме COMPLETED/CANCELED → CANCELED
    - DRIVER_SEARCHING/DRIVER_ASSIGNED → EXPIRED (таймаут поиска)
    """

    TRANSITIONS: dict[TripAction, Transition] = {
        TripAction.ACCEPT: Transition(
            action=TripAction.ACCEPT,
            sources=_SEARCHING,
            target=TripStatus.EN_ROUTE_TO_PICKUP,
            event_type=TripEventType.DRIVER_ACCEPTED,
            timestamp_field="accepted_at",
        ),
        TripAction.ARRIVE: Transition(
            action=TripAction.ARRIVE,
            sources=frozenset({TripStatus.EN_ROUTE_TO_PICKUP}),
            target=TripStatus.ARRIVED,
            event_type=TripEventType.ARRIVED,
            timestamp_field="arrived_at",
        ),
        TripAction.START: Transition(
            action=TripAction.START,
            sources=frozenset({TripStatus.ARRIVED}),
            target=TripStatus.IN_TRIP,
            event_type=TripEventType.STARTED,
            timestamp_field="started_at",
        ),
        TripAction.FINISH: Transition(
            action=TripAction.FINISH,
            sources=frozenset({TripStatus.IN_TRIP}),
            target=TripStatus.COMPLETED,
            event_type=TripEventType.COMPLETED,
            timestamp_field="completed_at",
        ),
        TripAction.CANCEL: Transition(
            action=TripAction.CANCEL,
            sources=frozenset(set(TripStatus) - {TripStatus.COMPLETED, TripStatus.CANCELED}),
            target=TripStatus.CANCELED,
            event_type=TripEventType.CANCELED,
            timestamp_field="canceled_at",
            clears_driver=True,
        ),
        TripAction.EXPIRE: Transition(
            action=TripAction.EXPIRE,
            sources=_SEARCHING,
            target=TripStatus.EXPIRED,
            event_type=TripEventType.EXPIRED,
            timestamp_field="expired_at",
        ),
    }

    @classmethod
    def get(cls, action: TripAction) -> Transition:
        return cls.TRANSITIONS[action]

    @classmethod
    def can_apply(cls, status: TripStatus, action: TripAction) -> bool:
        """Проверяет, допустимо ли действие в текущем статусе."""
        return status in cls.TRANSITIONS[action].sources

    @classmethod
    def validate(cls, status: TripStatus, action: TripAction) -> Transition:
        """Возвращает переход или выбрасывает INVALID_STATE."""
        transition = cls.TRANSITIONS[action]
        if status not in transition.sources:
            raise InvalidStateError(
                "INVALID_STATE",
                details={"status": status.value, "action": action.value},
            )
        return transition
