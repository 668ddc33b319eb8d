# trip_engine/infra/trip_notifier.py
"""
Живые уведомления о поездке.
Один broadcast-канал на trip_id, подписчик получает только события после подписки.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from trip_engine.common.logger import log_debug
from trip_engine.core.trips.models import utcnow


@dataclass(frozen=True)
class Notification:
    """Сообщение в канале поездки."""
    type: str
    data: dict[str, Any]
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data}


_CLOSED = object()


class Subscription:
    """
    Подписка на канал поездки.
    Регистрируется в канале сразу при создании. Поддерживает `async for`
    и `async with`; close() снимает подписку.
    """

    def __init__(self, notifier: "TripNotifier", trip_id: str, maxsize: int) -> None:
        self.trip_id = trip_id
        self._notifier = notifier
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, item: Any) -> bool:
        """Кладёт сообщение без ожидания. При переполнении вытесняет самое старое."""
        if self._closed:
            return False
        while True:
            try:
                self._queue.put_nowait(item)
                return True
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def get(self, timeout: Optional[float] = None) -> Optional[Notification]:
        """
        Следующее сообщение.

        Returns:
            Notification или None, если истёк timeout или подписка закрыта
        """
        if self._closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._notifier._unsubscribe(self)
        self._closed = True
        # Будим читателя, ждущего в get()
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Notification:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.close()


class TripNotifier:
    """
    Реестр каналов поездок.
    Создаётся в lifespan приложения и передаётся оркестратору явно.

    Каналы создаются лениво при первой подписке или публикации и живут
    до конца процесса.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        # trip_id -> подписчики
        self._channels: dict[str, set[Subscription]] = {}

        # Для статистики
        self._total_published: int = 0

    def _channel(self, trip_id: str) -> set[Subscription]:
        # setdefault атомарен в рамках event loop
        return self._channels.setdefault(trip_id, set())

    def subscribe(self, trip_id: str) -> Subscription:
        """Подписаться на канал поездки. Подписка активна сразу после вызова."""
        subscription = Subscription(self, trip_id, self.queue_size)
        self._channel(trip_id).add(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        self._channels.get(subscription.trip_id, set()).discard(subscription)

    async def publish(self, trip_id: str, type: str, data: dict[str, Any]) -> int:
        """
        Разослать сообщение всем текущим подписчикам поездки.
        Не блокируется и не выбрасывает исключений.

        Returns:
            Количество подписчиков, получивших сообщение
        """
        notification = Notification(type=type, data=dict(data))
        delivered = 0
        for subscription in list(self._channel(trip_id)):
            if subscription._offer(notification):
                delivered += 1

        self._total_published += 1
        await log_debug(
            f"Уведомление {type} по поездке {trip_id}: подписчиков {delivered}",
            extra={"trip_id": trip_id},
        )
        return delivered

    def subscriber_count(self, trip_id: str) -> int:
        return len(self._channels.get(trip_id, ()))

    def get_stats(self) -> dict[str, Any]:
        """Получить статистику."""
        return {
            "channels": len(self._channels),
            "subscribers": sum(len(s) for s in self._channels.values()),
            "total_published": self._total_published,
        }

    def close(self) -> None:
        """Закрыть все подписки (остановка приложения)."""
        for subscribers in list(self._channels.values()):
            for subscription in list(subscribers):
                subscription.close()
