# trip_engine/core/trips/service.py
"""
Оркестратор поездок.

Порядок обработки любого запроса:
1. Проверка предусловий по сохранённому состоянию
2. Вызовы внешних сервисов (best-effort, с фолбэками)
3. Запись нового состояния, затем записи журнала
4. Публикация уведомления
"""

from __future__ import annotations

from typing import Any, Awaitable, Optional, TypeVar

from trip_engine.common.constants import (
    AssignmentState,
    ClaimVerdict,
    MatchingStatus,
    NotificationType,
    TripEventType,
    TripStatus,
    TypeMsg,
)
from trip_engine.common.errors import (
    CLAIM_REJECTED,
    InvalidStateError,
    NotCompletedError,
    NotFoundError,
    TripError,
    UpstreamUnavailableError,
    ValidationError,
)
from trip_engine.common.logger import log_error, log_info, log_warning
from trip_engine.core.pricing import FareEstimator
from trip_engine.core.trips.models import (
    AcceptResult,
    FinishResult,
    LatLng,
    MatchingReport,
    Quote,
    Tracking,
    Trip,
    TripAssignment,
    TripCreated,
    TripEvent,
    TripRating,
    utcnow,
)
from trip_engine.core.trips.repository import TripRepository
from trip_engine.core.trips.state_machine import TripAction, TripStateMachine
from trip_engine.infra.gateways.base import DriverMatcher, UserDirectory
from trip_engine.infra.trip_notifier import Subscription, TripNotifier

T = TypeVar("T")

SUBSCRIPTION_PATH = "/v1/trips/{trip_id}/events"


class TripOrchestrator:
    """
    Единственный писатель поездок.
    Владеет state machine, поиском водителей, журналом событий и уведомлениями.
    """

    def __init__(
        self,
        repository: TripRepository,
        notifier: TripNotifier,
        users: UserDirectory,
        drivers: DriverMatcher,
        estimator: Optional[FareEstimator] = None,
        *,
        min_final_fare: int = 10000,
        search_radius_m: int = 3000,
        max_candidates: int = 20,
        invite_ttl_seconds: int = 15,
    ) -> None:
        self._repo = repository
        self._notifier = notifier
        self._users = users
        self._drivers = drivers
        self._estimator = estimator or FareEstimator()
        self.min_final_fare = min_final_fare
        self.search_radius_m = search_radius_m
        self.max_candidates = max_candidates
        self.invite_ttl_seconds = invite_ttl_seconds

    @classmethod
    def from_settings(
        cls,
        repository: TripRepository,
        notifier: TripNotifier,
        users: UserDirectory,
        drivers: DriverMatcher,
    ) -> "TripOrchestrator":
        """Создаёт оркестратор с тарифами и параметрами поиска из конфига."""
        from trip_engine.config import settings

        return cls(
            repository,
            notifier,
            users,
            drivers,
            FareEstimator.from_settings(),
            min_final_fare=settings.fares.MIN_FINAL_FARE,
            search_radius_m=settings.search.DRIVER_SEARCH_RADIUS_M,
            max_candidates=settings.search.MAX_CANDIDATES,
            invite_ttl_seconds=settings.search.INVITE_TTL_SECONDS,
        )

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    async def _primary(self, write: Awaitable[T], what: str) -> T:
        """Основная запись: сбой хранилища фатален для операции."""
        try:
            return await write
        except TripError:
            raise
        except Exception as e:
            await log_error(f"Сбой хранилища ({what}): {e}", exc_info=True)
            raise UpstreamUnavailableError(f"{what} failed") from e

    async def _secondary(self, write: Awaitable[T], what: str) -> Optional[T]:
        """Вспомогательная запись: сбой логируется и не откатывает операцию."""
        try:
            return await write
        except Exception as e:
            await log_warning(f"Вспомогательная запись не удалась ({what}): {e}")
            return None

    async def _record(self, trip_id: str, type: str, payload: dict[str, Any]) -> None:
        await self._secondary(self._repo.append_event(trip_id, type, payload), f"event {type}")

    async def _load(self, trip_id: str) -> Trip:
        trip = await self._primary(self._repo.get_trip(trip_id), "get trip")
        if trip is None:
            raise NotFoundError(f"trip {trip_id} not found", details={"trip_id": trip_id})
        return trip

    async def _apply_transition(
        self,
        trip: Trip,
        action: TripAction,
        *,
        fields: Optional[dict[str, Any]] = None,
        notify: Optional[dict[str, Any]] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Trip:
        """
        Применяет переход из таблицы к поездке.

        Условный update по (trip_id, наблюдаемый статус) исключает двойной переход
        при гонке. Уведомление и запись журнала выполняются только после
        успешной записи статуса.

        Raises:
            InvalidStateError: переход недопустим или статус уже сменился
            UpstreamUnavailableError: хранилище недоступно
        """
        transition = TripStateMachine.validate(trip.status, action)

        updates: dict[str, Any] = dict(fields or {})
        if transition.timestamp_field:
            updates.setdefault(transition.timestamp_field, utcnow())
        if transition.clears_driver:
            updates["driver_id"] = None

        updated = await self._primary(
            self._repo.update_trip_status(
                trip.id, {trip.status}, transition.target, **updates
            ),
            f"{action.value} trip",
        )
        if updated is None:
            await log_warning(
                f"Поездка {trip.id}: статус сменился параллельно, {action.value} отклонён"
            )
            raise InvalidStateError(
                "INVALID_STATE",
                details={"status": trip.status.value, "action": action.value, "conflict": True},
            )

        await self._notifier.publish(
            trip.id,
            NotificationType.STATUS_CHANGED,
            {"status": updated.status.value, **(notify or {})},
        )
        await self._record(trip.id, transition.event_type, payload or {})

        await log_info(
            f"Поездка {trip.id}: {trip.status.value} → {updated.status.value}",
            type_msg=TypeMsg.INFO,
            extra={"trip_id": trip.id, "action": action.value},
        )
        return updated

    # =========================================================================
    # КОТИРОВКА И СОЗДАНИЕ
    # =========================================================================

    def quote(
        self,
        origin: Optional[LatLng],
        destination: Optional[LatLng],
        service_type: Optional[str] = None,
    ) -> Quote:
        """Предварительная оценка. service_type пока не влияет на тариф."""
        return self._estimator.quote(origin, destination)

    async def create(
        self,
        passenger_id: str,
        origin: Optional[LatLng],
        destination: Optional[LatLng],
        note: Optional[str] = None,
        payment_method_id: Optional[str] = None,
    ) -> TripCreated:
        """
        Создаёт поездку и запускает поиск водителей.
        Сбои профиля и поиска не прерывают создание.
        """
        if origin is None or destination is None:
            raise ValidationError("origin & destination are required")
        if not passenger_id:
            raise ValidationError("passenger id is required")

        profile = await self._users.profile_exists(passenger_id)
        if profile.degraded or not profile.value:
            await log_warning(
                f"Профиль пассажира {passenger_id} не подтверждён, создаём поездку без проверки"
                + (f" ({profile.warning})" if profile.warning else "")
            )

        q = self._estimator.quote(origin, destination)

        trip = await self._primary(
            self._repo.create_trip(
                Trip(
                    passenger_id=passenger_id,
                    origin_lat=origin.lat,
                    origin_lng=origin.lng,
                    dest_lat=destination.lat,
                    dest_lng=destination.lng,
                    note=note,
                    payment_method_id=payment_method_id,
                    status=TripStatus.DRIVER_SEARCHING,
                    quote_distance_km=q.distance_km,
                    quote_duration_min=q.duration_min,
                    quote_fare_total=q.fare.total,
                )
            ),
            "create trip",
        )

        await self._notifier.publish(
            trip.id, NotificationType.TRIP_CREATED, {"id": trip.id, "status": trip.status.value}
        )
        await log_info(
            f"Создана поездка {trip.id} пассажира {passenger_id}, {q.distance_km} км, {q.fare.total}",
            type_msg=TypeMsg.INFO,
            extra={"trip_id": trip.id},
        )

        try:
            matching = await self._start_matching(trip)
        except Exception as e:
            # Поездка уже сохранена: сбой поиска её не откатывает
            await log_error(f"Поездка {trip.id}: сбой запуска поиска водителей: {e}", exc_info=True)
            await self._record(
                trip.id, TripEventType.DRIVER_SEARCH_ERROR, {"message": str(e)}
            )
            matching = MatchingReport(
                status=MatchingStatus.DEGRADED,
                warnings=[f"driver search failed: {e.__class__.__name__}"],
            )

        return TripCreated(
            **trip.model_dump(),
            tracking=Tracking(subscription_path=SUBSCRIPTION_PATH.format(trip_id=trip.id)),
            matching=matching,
        )

    async def _start_matching(self, trip: Trip) -> MatchingReport:
        """Геопоиск кандидатов и рассылка приглашений. Никогда не выбрасывает исключений."""
        nearby = await self._drivers.nearby_drivers(
            trip.origin, self.search_radius_m, self.max_candidates
        )
        if nearby.degraded:
            await self._record(
                trip.id, TripEventType.DRIVER_SEARCH_ERROR, {"message": "driver-stream unavailable"}
            )
            return MatchingReport(status=MatchingStatus.DEGRADED, warnings=[nearby.warning or ""])

        candidates = list(dict.fromkeys(nearby.value))[: self.max_candidates]
        if not candidates:
            await log_info(f"Поездка {trip.id}: рядом нет водителей", type_msg=TypeMsg.INFO)
            return MatchingReport(status=MatchingStatus.NO_CANDIDATES)

        warnings: list[str] = []

        prepared = await self._drivers.prepare_assign(trip.id, candidates, self.invite_ttl_seconds)
        if prepared.degraded:
            warnings.append(prepared.warning or "prepare assign failed")

        created = await self._secondary(
            self._repo.create_assignments(trip.id, candidates, self.invite_ttl_seconds),
            "create assignments",
        )
        if created is None:
            warnings.append("assignments not persisted")

        await self._record(
            trip.id, TripEventType.DRIVER_SEARCH_STARTED, {"candidates": candidates}
        )

        return MatchingReport(
            status=MatchingStatus.STARTED, candidates=len(candidates), warnings=warnings
        )

    async def get(self, trip_id: str) -> Trip:
        """Поездка по ID или NOT_FOUND."""
        return await self._load(trip_id)

    # =========================================================================
    # ВОДИТЕЛИ
    # =========================================================================

    async def accept(self, trip_id: str, driver_id: str) -> AcceptResult:
        """
        Водитель принимает поездку.
        Победителя гонки определяет внешний claim_trip, локальный условный
        update только отражает его вердикт.
        """
        trip = await self._load(trip_id)
        TripStateMachine.validate(trip.status, TripAction.ACCEPT)

        claim = await self._drivers.claim_trip(trip_id, driver_id)
        if claim.value != ClaimVerdict.ACCEPTED:
            await self._secondary(
                self._repo.update_assignments(trip_id, driver_id, AssignmentState.DECLINED),
                "decline assignment",
            )
            await self._record(trip_id, TripEventType.DRIVER_DECLINED, {"driverId": driver_id})
            await log_info(
                f"Поездка {trip_id}: водитель {driver_id} не получил заказ"
                + (f" ({claim.warning})" if claim.warning else ""),
                type_msg=TypeMsg.INFO,
            )
            return AcceptResult(ok=False, reason=CLAIM_REJECTED)

        try:
            await self._apply_transition(
                trip,
                TripAction.ACCEPT,
                fields={"driver_id": driver_id},
                notify={"driverId": driver_id},
                payload={"driverId": driver_id},
            )
        except InvalidStateError:
            # Арбитр принял водителя, но статус поездки сменился параллельно
            await log_warning(
                f"Поездка {trip_id}: вердикт ACCEPTED для водителя {driver_id} отброшен, статус уже сменился"
            )
            await self._secondary(
                self._repo.update_assignments(
                    trip_id,
                    driver_id,
                    AssignmentState.DECLINED,
                    only_from={AssignmentState.INVITED},
                ),
                "decline assignment",
            )
            await self._record(
                trip_id,
                TripEventType.DRIVER_DECLINED,
                {"driverId": driver_id, "reason": "STATE_CHANGED"},
            )
            raise

        await self._secondary(
            self._repo.update_assignments(trip_id, driver_id, AssignmentState.CLAIMED),
            "claim assignment",
        )
        return AcceptResult(ok=True)

    async def decline(self, trip_id: str, driver_id: str) -> bool:
        """
        Водитель отказался от приглашения. Статус поездки не меняется.
        Отклонить можно только INVITED: принятый заказ отменяется через cancel.

        Returns:
            True, если приглашение было отклонено этим вызовом
        """
        await self._load(trip_id)
        changed = await self._primary(
            self._repo.update_assignments(
                trip_id,
                driver_id,
                AssignmentState.DECLINED,
                only_from={AssignmentState.INVITED},
            ),
            "decline assignment",
        )
        if not changed:
            await log_info(
                f"Поездка {trip_id}: у водителя {driver_id} нет ожидающего приглашения",
                type_msg=TypeMsg.DEBUG,
            )
            return False

        await self._record(trip_id, TripEventType.DRIVER_DECLINED, {"driverId": driver_id})
        return True

    async def expire_invitation(self, trip_id: str, driver_id: str) -> bool:
        """
        Истёк TTL приглашения водителя.
        Меняет только INVITED → EXPIRED, статус поездки не трогает.

        Returns:
            True, если приглашение было просрочено этим вызовом
        """
        await self._load(trip_id)
        changed = await self._primary(
            self._repo.update_assignments(
                trip_id,
                driver_id,
                AssignmentState.EXPIRED,
                only_from={AssignmentState.INVITED},
            ),
            "expire assignment",
        )
        if not changed:
            return False

        await self._record(trip_id, TripEventType.DRIVER_INVITE_EXPIRED, {"driverId": driver_id})
        return True

    async def assignments(self, trip_id: str) -> list[TripAssignment]:
        await self._load(trip_id)
        return await self._primary(self._repo.list_assignments(trip_id), "list assignments")

    # =========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ
    # =========================================================================

    async def arrive(self, trip_id: str) -> Trip:
        trip = await self._load(trip_id)
        return await self._apply_transition(
            trip, TripAction.ARRIVE, payload={"driverId": trip.driver_id}
        )

    async def start(self, trip_id: str) -> Trip:
        trip = await self._load(trip_id)
        return await self._apply_transition(
            trip, TripAction.START, payload={"driverId": trip.driver_id}
        )

    async def finish(
        self, trip_id: str, actual_distance_km: float, actual_duration_min: int
    ) -> FinishResult:
        """
        Завершает поездку.
        Итоговая стоимость не ниже минимальной и не ниже котировки.
        """
        if actual_distance_km is None or actual_distance_km < 0:
            raise ValidationError("actualDistanceKm must be a non-negative number")
        if actual_duration_min is None or actual_duration_min < 0:
            raise ValidationError("actualDurationMin must be a non-negative number")

        trip = await self._load(trip_id)
        TripStateMachine.validate(trip.status, TripAction.FINISH)

        final = max(self.min_final_fare, trip.quote_fare_total or 0)
        await self._apply_transition(
            trip,
            TripAction.FINISH,
            fields={
                "actual_distance_km": actual_distance_km,
                "actual_duration_min": actual_duration_min,
                "final_fare_total": final,
            },
            notify={"finalFareTotal": final},
            payload={
                "actualDistanceKm": actual_distance_km,
                "actualDurationMin": actual_duration_min,
            },
        )
        return FinishResult(final_fare_total=final)

    async def cancel(
        self,
        trip_id: str,
        actor_id: str,
        reason_code: str,
        note: Optional[str] = None,
    ) -> Trip:
        """Отмена из любого статуса, кроме COMPLETED и CANCELED."""
        if not reason_code:
            raise ValidationError("reasonCode is required")

        trip = await self._load(trip_id)
        return await self._apply_transition(
            trip,
            TripAction.CANCEL,
            fields={
                "cancel_reason_code": reason_code,
                "cancel_note": note,
                "canceled_by": actor_id,
            },
            notify={"reasonCode": reason_code},
            payload={"by": actor_id, "reasonCode": reason_code, "note": note},
        )

    async def expire(self, trip_id: str) -> Trip:
        """Никто из водителей не взял заказ за отведённое время."""
        trip = await self._load(trip_id)
        return await self._apply_transition(trip, TripAction.EXPIRE)

    # =========================================================================
    # ОЦЕНКА, ЖУРНАЛ, ПОДПИСКА
    # =========================================================================

    async def rate(
        self,
        trip_id: str,
        rater_id: str,
        stars: int,
        comment: Optional[str] = None,
    ) -> TripRating:
        """Оценка завершённой поездки. Повторный вызов обновляет оценку."""
        if isinstance(stars, bool) or not isinstance(stars, int) or not 1 <= stars <= 5:
            raise ValidationError("stars must be an integer between 1 and 5")

        trip = await self._load(trip_id)
        if trip.status != TripStatus.COMPLETED:
            raise NotCompletedError(
                "NOT_COMPLETED", details={"status": trip.status.value}
            )

        rating = await self._primary(
            self._repo.upsert_rating(
                TripRating(
                    trip_id=trip_id,
                    rater_id=rater_id,
                    driver_id=trip.driver_id or "",
                    stars=stars,
                    comment=comment,
                )
            ),
            "upsert rating",
        )
        await self._record(trip_id, TripEventType.RATED, {"stars": stars})
        return rating

    async def history(self, trip_id: str) -> list[TripEvent]:
        """Журнал поездки в порядке записи."""
        await self._load(trip_id)
        return await self._primary(self._repo.list_events(trip_id), "list events")

    def subscribe(self, trip_id: str) -> Subscription:
        """Подписка на живые уведомления. Истории не содержит, см. history()."""
        return self._notifier.subscribe(trip_id)
