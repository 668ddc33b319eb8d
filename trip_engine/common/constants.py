# trip_engine/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class TripStatus(str, Enum):
    """Статус поездки."""
    REQUESTED = "REQUESTED"  # Не используется, зарезервирован
    DRIVER_SEARCHING = "DRIVER_SEARCHING"  # Начальный статус, идёт поиск
    DRIVER_ASSIGNED = "DRIVER_ASSIGNED"
    EN_ROUTE_TO_PICKUP = "EN_ROUTE_TO_PICKUP"  # Водитель едет к пассажиру
    ARRIVED = "ARRIVED"
    IN_TRIP = "IN_TRIP"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"  # Никто из водителей не взял заказ


# Статусы, при которых у поездки обязан быть водитель
DRIVER_BOUND_STATUSES: frozenset[TripStatus] = frozenset({
    TripStatus.EN_ROUTE_TO_PICKUP,
    TripStatus.ARRIVED,
    TripStatus.IN_TRIP,
    TripStatus.COMPLETED,
})

TERMINAL_STATUSES: frozenset[TripStatus] = frozenset({
    TripStatus.COMPLETED,
    TripStatus.CANCELED,
    TripStatus.EXPIRED,
})


class AssignmentState(str, Enum):
    """Состояние приглашения водителя на поездку."""
    INVITED = "INVITED"
    CLAIMED = "CLAIMED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class ClaimVerdict(str, Enum):
    """Вердикт внешнего арбитра по попытке водителя забрать поездку."""
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


class TripEventType:
    """Типы записей журнала поездки."""
    DRIVER_SEARCH_STARTED = "DriverSearchStarted"
    DRIVER_SEARCH_ERROR = "DriverSearchError"
    DRIVER_ACCEPTED = "DriverAccepted"
    DRIVER_DECLINED = "DriverDeclined"
    DRIVER_INVITE_EXPIRED = "DriverInviteExpired"
    ARRIVED = "Arrived"
    STARTED = "Started"
    COMPLETED = "Completed"
    CANCELED = "Canceled"
    EXPIRED = "Expired"
    RATED = "Rated"


class NotificationType:
    """Типы живых уведомлений в канале поездки."""
    TRIP_CREATED = "TRIP_CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"


class MatchingStatus(str, Enum):
    """Итог запуска поиска водителей при создании поездки."""
    STARTED = "STARTED"
    NO_CANDIDATES = "NO_CANDIDATES"
    DEGRADED = "DEGRADED"
