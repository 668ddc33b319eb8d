# tests/core/test_trip_service.py
"""
Тесты оркестратора поездок.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from trip_engine.common.constants import (
    AssignmentState,
    ClaimVerdict,
    MatchingStatus,
    NotificationType,
    TripEventType,
    TripStatus,
)
from trip_engine.common.errors import (
    CLAIM_REJECTED,
    InvalidStateError,
    NotCompletedError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from trip_engine.core.pricing import FareEstimator
from trip_engine.core.trips.memory import InMemoryTripRepository
from trip_engine.core.trips.models import LatLng, Trip
from trip_engine.core.trips.service import TripOrchestrator
from trip_engine.infra.gateways.base import GatewayResult
from trip_engine.infra.trip_notifier import Notification, Subscription, TripNotifier


# =============================================================================
# ВСПОМОГАТЕЛЬНЫЕ
# =============================================================================

async def drain(subscription: Subscription) -> list[Notification]:
    """Забирает всё, что уже лежит в очереди подписки."""
    items = []
    while True:
        item = await subscription.get(timeout=0.01)
        if item is None:
            return items
        items.append(item)


async def trip_in_status(
    orchestrator: TripOrchestrator,
    origin: LatLng,
    destination: LatLng,
    status: TripStatus,
    driver_id: str = "driver-1",
) -> Trip:
    """Создаёт поездку и доводит её до нужного статуса через публичные операции."""
    created = await orchestrator.create("passenger-1", origin, destination)
    trip_id = created.id

    if status == TripStatus.CANCELED:
        await orchestrator.cancel(trip_id, "passenger-1", "CHANGED_MIND")
    elif status == TripStatus.EXPIRED:
        await orchestrator.expire(trip_id)
    elif status != TripStatus.DRIVER_SEARCHING:
        await orchestrator.accept(trip_id, driver_id)
        if status in (TripStatus.ARRIVED, TripStatus.IN_TRIP, TripStatus.COMPLETED):
            await orchestrator.arrive(trip_id)
        if status in (TripStatus.IN_TRIP, TripStatus.COMPLETED):
            await orchestrator.start(trip_id)
        if status == TripStatus.COMPLETED:
            await orchestrator.finish(trip_id, 5.1, 12)

    trip = await orchestrator.get(trip_id)
    assert trip.status == status
    return trip


def event_types(events: list) -> list[str]:
    return [e.type for e in events]


# =============================================================================
# КОТИРОВКА И СОЗДАНИЕ
# =============================================================================

class TestQuote:
    """Тесты котировки через оркестратор."""

    def test_same_as_estimator(self, orchestrator: TripOrchestrator, origin, destination) -> None:
        assert orchestrator.quote(origin, destination) == FareEstimator().quote(origin, destination)

    def test_service_type_ignored(self, orchestrator: TripOrchestrator, origin, destination) -> None:
        assert orchestrator.quote(origin, destination, "bike") == orchestrator.quote(origin, destination)

    def test_missing_point(self, orchestrator: TripOrchestrator, origin) -> None:
        with pytest.raises(ValidationError):
            orchestrator.quote(origin, None)


class TestCreate:
    """Тесты создания поездки и запуска поиска."""

    @pytest.mark.asyncio
    async def test_create_then_get_matches_quote(
        self, orchestrator: TripOrchestrator, origin, destination
    ) -> None:
        """Поездка создаётся в DRIVER_SEARCHING с котировкой, равной отдельному quote."""
        created = await orchestrator.create("passenger-1", origin, destination, note="у входа")
        trip = await orchestrator.get(created.id)
        quote = orchestrator.quote(origin, destination)

        assert trip.status == TripStatus.DRIVER_SEARCHING
        assert trip.passenger_id == "passenger-1"
        assert trip.driver_id is None
        assert trip.final_fare_total is None
        assert trip.note == "у входа"
        assert trip.quote_distance_km == quote.distance_km
        assert trip.quote_duration_min == quote.duration_min
        assert trip.quote_fare_total == quote.fare.total

    @pytest.mark.asyncio
    async def test_tracking_handle(self, orchestrator: TripOrchestrator, origin, destination) -> None:
        created = await orchestrator.create("passenger-1", origin, destination)
        assert created.tracking.subscription_path == f"/v1/trips/{created.id}/events"

    @pytest.mark.asyncio
    async def test_matching_started(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        mock_drivers: AsyncMock,
        origin,
        destination,
    ) -> None:
        created = await orchestrator.create("passenger-1", origin, destination)

        mock_drivers.nearby_drivers.assert_awaited_once_with(origin, 3000, 20)
        mock_drivers.prepare_assign.assert_awaited_once_with(
            created.id, ["driver-1", "driver-2", "driver-3"], 15
        )

        assert created.matching.status == MatchingStatus.STARTED
        assert created.matching.candidates == 3
        assert created.matching.warnings == []

        assignments = await repo.list_assignments(created.id)
        assert {a.driver_id for a in assignments} == {"driver-1", "driver-2", "driver-3"}
        assert all(a.state == AssignmentState.INVITED for a in assignments)
        assert all(a.ttl_seconds == 15 for a in assignments)

        events = await repo.list_events(created.id)
        assert event_types(events) == [TripEventType.DRIVER_SEARCH_STARTED]
        assert events[0].payload == {"candidates": ["driver-1", "driver-2", "driver-3"]}

    @pytest.mark.asyncio
    async def test_duplicate_candidates_skipped(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        mock_drivers: AsyncMock,
        origin,
        destination,
    ) -> None:
        mock_drivers.nearby_drivers.return_value = GatewayResult.success(["d-1", "d-1", "d-2"])

        created = await orchestrator.create("passenger-1", origin, destination)

        assert created.matching.candidates == 2
        assert len(await repo.list_assignments(created.id)) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "profile",
        [GatewayResult.success(False), GatewayResult.fallback(False, "users_service unavailable")],
    )
    async def test_profile_lookup_never_blocks(
        self,
        orchestrator: TripOrchestrator,
        mock_users: AsyncMock,
        origin,
        destination,
        profile: GatewayResult,
    ) -> None:
        """Отсутствие или недоступность профиля не мешает созданию."""
        mock_users.profile_exists.return_value = profile

        created = await orchestrator.create("ghost", origin, destination)

        assert created.status == TripStatus.DRIVER_SEARCHING
        mock_users.profile_exists.assert_awaited_once_with("ghost")

    @pytest.mark.asyncio
    async def test_search_failure_is_degraded(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        mock_drivers: AsyncMock,
        origin,
        destination,
    ) -> None:
        mock_drivers.nearby_drivers.return_value = GatewayResult.fallback([], "timeout")

        created = await orchestrator.create("passenger-1", origin, destination)

        assert created.status == TripStatus.DRIVER_SEARCHING
        assert created.matching.status == MatchingStatus.DEGRADED
        assert created.matching.warnings == ["timeout"]
        mock_drivers.prepare_assign.assert_not_awaited()
        assert await repo.list_assignments(created.id) == []

        events = await repo.list_events(created.id)
        assert event_types(events) == [TripEventType.DRIVER_SEARCH_ERROR]
        assert events[0].payload == {"message": "driver-stream unavailable"}

    @pytest.mark.asyncio
    async def test_no_candidates(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        mock_drivers: AsyncMock,
        origin,
        destination,
    ) -> None:
        mock_drivers.nearby_drivers.return_value = GatewayResult.success([])

        created = await orchestrator.create("passenger-1", origin, destination)

        assert created.matching.status == MatchingStatus.NO_CANDIDATES
        mock_drivers.prepare_assign.assert_not_awaited()
        assert await repo.list_events(created.id) == []

    @pytest.mark.asyncio
    async def test_prepare_assign_failure_is_warning(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        mock_drivers: AsyncMock,
        origin,
        destination,
    ) -> None:
        mock_drivers.prepare_assign.return_value = GatewayResult.fallback(False, "prepare failed")

        created = await orchestrator.create("passenger-1", origin, destination)

        assert created.matching.status == MatchingStatus.STARTED
        assert created.matching.warnings == ["prepare failed"]
        assert len(await repo.list_assignments(created.id)) == 3

    @pytest.mark.asyncio
    async def test_assignment_write_failure_does_not_unwind(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        origin,
        destination,
    ) -> None:
        repo.create_assignments = AsyncMock(side_effect=RuntimeError("db down"))

        created = await orchestrator.create("passenger-1", origin, destination)

        assert (await orchestrator.get(created.id)).status == TripStatus.DRIVER_SEARCHING
        assert "assignments not persisted" in created.matching.warnings

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["nearby_drivers", "prepare_assign"])
    async def test_matcher_exception_does_not_unwind(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        mock_drivers: AsyncMock,
        origin,
        destination,
        method: str,
    ) -> None:
        """Исключение шлюза водителей после сохранения поездки даёт DEGRADED, а не ошибку."""
        getattr(mock_drivers, method).side_effect = RuntimeError("channel closed")

        created = await orchestrator.create("passenger-1", origin, destination)

        assert created.matching.status == MatchingStatus.DEGRADED
        assert created.matching.warnings == ["driver search failed: RuntimeError"]
        assert created.tracking.subscription_path == f"/v1/trips/{created.id}/events"
        assert (await orchestrator.get(created.id)).status == TripStatus.DRIVER_SEARCHING

        events = await repo.list_events(created.id)
        assert event_types(events) == [TripEventType.DRIVER_SEARCH_ERROR]
        assert events[0].payload == {"message": "channel closed"}

    @pytest.mark.asyncio
    async def test_missing_coordinates(
        self, orchestrator: TripOrchestrator, mock_users: AsyncMock, origin
    ) -> None:
        with pytest.raises(ValidationError):
            await orchestrator.create("passenger-1", origin, None)

        mock_users.profile_exists.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_failure_is_fatal(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        mock_drivers: AsyncMock,
        origin,
        destination,
    ) -> None:
        repo.create_trip = AsyncMock(side_effect=ConnectionRefusedError("refused"))

        with pytest.raises(UpstreamUnavailableError):
            await orchestrator.create("passenger-1", origin, destination)

        mock_drivers.nearby_drivers.assert_not_awaited()


class TestGet:
    """Тесты получения поездки."""

    @pytest.mark.asyncio
    async def test_not_found(self, orchestrator: TripOrchestrator) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await orchestrator.get("missing")
        assert exc_info.value.http_status == 404


# =============================================================================
# ВОДИТЕЛИ
# =============================================================================

class TestAccept:
    """Тесты принятия поездки водителем."""

    @pytest.mark.asyncio
    async def test_accept_success(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        notifier: TripNotifier,
        origin,
        destination,
    ) -> None:
        created = await orchestrator.create("passenger-1", origin, destination)
        subscription = notifier.subscribe(created.id)

        result = await orchestrator.accept(created.id, "driver-2")

        assert result.ok is True
        assert result.reason is None

        trip = await orchestrator.get(created.id)
        assert trip.status == TripStatus.EN_ROUTE_TO_PICKUP
        assert trip.driver_id == "driver-2"
        assert trip.accepted_at is not None

        states = {a.driver_id: a.state for a in await repo.list_assignments(created.id)}
        assert states["driver-2"] == AssignmentState.CLAIMED
        assert states["driver-1"] == AssignmentState.INVITED

        events = await repo.list_events(created.id)
        assert events[-1].type == TripEventType.DRIVER_ACCEPTED
        assert events[-1].payload == {"driverId": "driver-2"}

        notifications = await drain(subscription)
        assert [n.to_dict() for n in notifications] == [
            {
                "type": NotificationType.STATUS_CHANGED,
                "data": {"status": "EN_ROUTE_TO_PICKUP", "driverId": "driver-2"},
            }
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "claim",
        [
            GatewayResult.success(ClaimVerdict.DECLINED),
            GatewayResult.fallback(ClaimVerdict.DECLINED, "claim failed: ConnectTimeout"),
        ],
    )
    async def test_claim_rejected(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        mock_drivers: AsyncMock,
        origin,
        destination,
        claim: GatewayResult,
    ) -> None:
        """Отказ арбитра или его недоступность: CLAIM_REJECTED без смены статуса."""
        mock_drivers.claim_trip.return_value = claim
        created = await orchestrator.create("passenger-1", origin, destination)

        result = await orchestrator.accept(created.id, "driver-1")

        assert result.ok is False
        assert result.reason == CLAIM_REJECTED
        assert (await orchestrator.get(created.id)).status == TripStatus.DRIVER_SEARCHING

        states = {a.driver_id: a.state for a in await repo.list_assignments(created.id)}
        assert states["driver-1"] == AssignmentState.DECLINED

        events = await repo.list_events(created.id)
        assert events[-1].type == TripEventType.DRIVER_DECLINED
        assert events[-1].payload == {"driverId": "driver-1"}

    @pytest.mark.asyncio
    async def test_accept_after_assignment_is_invalid(
        self, orchestrator: TripOrchestrator, mock_drivers: AsyncMock, origin, destination
    ) -> None:
        trip = await trip_in_status(orchestrator, origin, destination, TripStatus.EN_ROUTE_TO_PICKUP)
        mock_drivers.claim_trip.reset_mock()

        with pytest.raises(InvalidStateError):
            await orchestrator.accept(trip.id, "driver-2")

        mock_drivers.claim_trip.assert_not_awaited()
        assert (await orchestrator.get(trip.id)).driver_id == "driver-1"

    @pytest.mark.asyncio
    async def test_concurrent_accept_race(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        notifier: TripNotifier,
        mock_drivers: AsyncMock,
        origin,
        destination,
    ) -> None:
        """Арбитр принимает ровно одного: один CLAIMED, один DECLINED, один переход."""
        winners: dict[str, str] = {}

        async def claim(trip_id: str, driver_id: str) -> GatewayResult:
            await asyncio.sleep(0)
            if trip_id in winners:
                return GatewayResult.success(ClaimVerdict.DECLINED)
            winners[trip_id] = driver_id
            return GatewayResult.success(ClaimVerdict.ACCEPTED)

        mock_drivers.claim_trip.side_effect = claim
        created = await orchestrator.create("passenger-1", origin, destination)
        subscription = notifier.subscribe(created.id)

        results = await asyncio.gather(
            orchestrator.accept(created.id, "driver-1"),
            orchestrator.accept(created.id, "driver-2"),
        )

        assert sorted(r.ok for r in results) == [False, True]

        assignments = await repo.list_assignments(created.id)
        states = [a.state for a in assignments if a.driver_id in ("driver-1", "driver-2")]
        assert states.count(AssignmentState.CLAIMED) == 1
        assert states.count(AssignmentState.DECLINED) == 1

        trip = await orchestrator.get(created.id)
        assert trip.status == TripStatus.EN_ROUTE_TO_PICKUP
        assert trip.driver_id == winners[created.id]

        status_changes = [
            n for n in await drain(subscription) if n.type == NotificationType.STATUS_CHANGED
        ]
        assert len(status_changes) == 1

    @pytest.mark.asyncio
    async def test_accepted_claim_after_cancel(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        mock_drivers: AsyncMock,
        origin,
        destination,
    ) -> None:
        """Отмена во время захвата: вердикт арбитра отброшен и отражён в журнале."""
        created = await orchestrator.create("passenger-1", origin, destination)

        async def claim_while_canceled(trip_id: str, driver_id: str) -> GatewayResult:
            await orchestrator.cancel(trip_id, "passenger-1", "CHANGED_MIND")
            return GatewayResult.success(ClaimVerdict.ACCEPTED)

        mock_drivers.claim_trip.side_effect = claim_while_canceled

        with pytest.raises(InvalidStateError) as exc_info:
            await orchestrator.accept(created.id, "driver-1")

        assert exc_info.value.details["conflict"] is True
        trip = await orchestrator.get(created.id)
        assert trip.status == TripStatus.CANCELED
        assert trip.driver_id is None

        states = {a.driver_id: a.state for a in await repo.list_assignments(created.id)}
        assert states["driver-1"] == AssignmentState.DECLINED

        events = await repo.list_events(created.id)
        assert events[-1].type == TripEventType.DRIVER_DECLINED
        assert events[-1].payload == {"driverId": "driver-1", "reason": "STATE_CHANGED"}

    @pytest.mark.asyncio
    async def test_conditional_update_blocks_double_transition(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        mock_drivers: AsyncMock,
        origin,
        destination,
    ) -> None:
        """Даже если арбитр ошибочно примет обоих, статус сменится один раз."""

        async def always_accept(trip_id: str, driver_id: str) -> GatewayResult:
            await asyncio.sleep(0)
            return GatewayResult.success(ClaimVerdict.ACCEPTED)

        mock_drivers.claim_trip.side_effect = always_accept
        created = await orchestrator.create("passenger-1", origin, destination)

        results = await asyncio.gather(
            orchestrator.accept(created.id, "driver-1"),
            orchestrator.accept(created.id, "driver-2"),
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, Exception) and r.ok) == 1
        assert sum(1 for r in results if isinstance(r, InvalidStateError)) == 1

        events = await repo.list_events(created.id)
        assert event_types(events).count(TripEventType.DRIVER_ACCEPTED) == 1

        claimed = [a for a in await repo.list_assignments(created.id) if a.state == AssignmentState.CLAIMED]
        assert len(claimed) == 1


class TestDecline:
    """Тесты отказа водителя."""

    @pytest.mark.asyncio
    async def test_decline(
        self, orchestrator: TripOrchestrator, repo: InMemoryTripRepository, origin, destination
    ) -> None:
        created = await orchestrator.create("passenger-1", origin, destination)

        assert await orchestrator.decline(created.id, "driver-3") is True

        assert (await orchestrator.get(created.id)).status == TripStatus.DRIVER_SEARCHING
        states = {a.driver_id: a.state for a in await repo.list_assignments(created.id)}
        assert states["driver-3"] == AssignmentState.DECLINED
        assert (await repo.list_events(created.id))[-1].type == TripEventType.DRIVER_DECLINED

    @pytest.mark.asyncio
    async def test_decline_after_accept_is_ignored(
        self, orchestrator: TripOrchestrator, repo: InMemoryTripRepository, origin, destination
    ) -> None:
        """Принятый заказ не отклоняется: поездка и приглашение остаются согласованными."""
        trip = await trip_in_status(orchestrator, origin, destination, TripStatus.EN_ROUTE_TO_PICKUP)

        assert await orchestrator.decline(trip.id, "driver-1") is False

        current = await orchestrator.get(trip.id)
        assert current.status == TripStatus.EN_ROUTE_TO_PICKUP
        assert current.driver_id == "driver-1"
        states = {a.driver_id: a.state for a in await repo.list_assignments(trip.id)}
        assert states["driver-1"] == AssignmentState.CLAIMED
        assert (await repo.list_events(trip.id))[-1].type == TripEventType.DRIVER_ACCEPTED

    @pytest.mark.asyncio
    async def test_repeated_decline(
        self, orchestrator: TripOrchestrator, repo: InMemoryTripRepository, origin, destination
    ) -> None:
        created = await orchestrator.create("passenger-1", origin, destination)

        assert await orchestrator.decline(created.id, "driver-2") is True
        assert await orchestrator.decline(created.id, "driver-2") is False

        types = event_types(await repo.list_events(created.id))
        assert types.count(TripEventType.DRIVER_DECLINED) == 1

    @pytest.mark.asyncio
    async def test_decline_unknown_trip(self, orchestrator: TripOrchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.decline("missing", "driver-1")

    @pytest.mark.asyncio
    async def test_other_driver_can_still_claim(
        self, orchestrator: TripOrchestrator, origin, destination
    ) -> None:
        created = await orchestrator.create("passenger-1", origin, destination)
        await orchestrator.decline(created.id, "driver-1")

        result = await orchestrator.accept(created.id, "driver-2")

        assert result.ok is True


class TestExpiry:
    """Тесты истечения приглашений и поиска."""

    @pytest.mark.asyncio
    async def test_expire_invitation(
        self, orchestrator: TripOrchestrator, repo: InMemoryTripRepository, origin, destination
    ) -> None:
        created = await orchestrator.create("passenger-1", origin, destination)

        assert await orchestrator.expire_invitation(created.id, "driver-1") is True
        assert await orchestrator.expire_invitation(created.id, "driver-1") is False

        states = {a.driver_id: a.state for a in await repo.list_assignments(created.id)}
        assert states["driver-1"] == AssignmentState.EXPIRED
        assert (await orchestrator.get(created.id)).status == TripStatus.DRIVER_SEARCHING

        types = event_types(await repo.list_events(created.id))
        assert types.count(TripEventType.DRIVER_INVITE_EXPIRED) == 1

    @pytest.mark.asyncio
    async def test_expire_invitation_ignores_answered(
        self, orchestrator: TripOrchestrator, origin, destination
    ) -> None:
        created = await orchestrator.create("passenger-1", origin, destination)
        await orchestrator.decline(created.id, "driver-1")

        assert await orchestrator.expire_invitation(created.id, "driver-1") is False

    @pytest.mark.asyncio
    async def test_expire_trip(
        self, orchestrator: TripOrchestrator, repo: InMemoryTripRepository, origin, destination
    ) -> None:
        created = await orchestrator.create("passenger-1", origin, destination)

        trip = await orchestrator.expire(created.id)

        assert trip.status == TripStatus.EXPIRED
        assert trip.expired_at is not None
        assert (await repo.list_events(created.id))[-1].type == TripEventType.EXPIRED

        with pytest.raises(InvalidStateError):
            await orchestrator.accept(created.id, "driver-1")


# =============================================================================
# ЖИЗНЕННЫЙ ЦИКЛ
# =============================================================================

class TestLifecycle:
    """Тесты arrive/start/finish."""

    @pytest.mark.asyncio
    async def test_full_ride(
        self, orchestrator: TripOrchestrator, repo: InMemoryTripRepository, origin, destination
    ) -> None:
        trip = await trip_in_status(orchestrator, origin, destination, TripStatus.IN_TRIP)

        result = await orchestrator.finish(trip.id, 5.4, 14)

        completed = await orchestrator.get(trip.id)
        assert completed.status == TripStatus.COMPLETED
        assert completed.driver_id == "driver-1"
        assert completed.arrived_at is not None
        assert completed.started_at is not None
        assert completed.completed_at is not None
        assert completed.actual_distance_km == 5.4
        assert completed.actual_duration_min == 14
        assert completed.final_fare_total == max(10000, completed.quote_fare_total)
        assert result.final_fare_total == completed.final_fare_total
        assert result.ok is True

        assert event_types(await repo.list_events(trip.id)) == [
            TripEventType.DRIVER_SEARCH_STARTED,
            TripEventType.DRIVER_ACCEPTED,
            TripEventType.ARRIVED,
            TripEventType.STARTED,
            TripEventType.COMPLETED,
        ]
        completed_event = (await repo.list_events(trip.id))[-1]
        assert completed_event.payload == {"actualDistanceKm": 5.4, "actualDurationMin": 14}

    @pytest.mark.asyncio
    async def test_final_fare_has_minimum(
        self,
        repo: InMemoryTripRepository,
        notifier: TripNotifier,
        mock_users: AsyncMock,
        mock_drivers: AsyncMock,
        origin,
    ) -> None:
        """Котировка ниже минимума поднимается до 10000."""
        cheap = TripOrchestrator(
            repo, notifier, mock_users, mock_drivers, FareEstimator(base_fare=0)
        )
        trip = await trip_in_status(cheap, origin, origin, TripStatus.IN_TRIP)
        assert trip.quote_fare_total == 0

        result = await cheap.finish(trip.id, 0.1, 1)

        assert result.final_fare_total == 10000

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,operation",
        [
            (TripStatus.DRIVER_SEARCHING, "arrive"),
            (TripStatus.DRIVER_SEARCHING, "start"),
            (TripStatus.DRIVER_SEARCHING, "finish"),
            (TripStatus.EN_ROUTE_TO_PICKUP, "start"),
            (TripStatus.EN_ROUTE_TO_PICKUP, "finish"),
            (TripStatus.ARRIVED, "arrive"),
            (TripStatus.ARRIVED, "finish"),
            (TripStatus.IN_TRIP, "arrive"),
            (TripStatus.COMPLETED, "finish"),
            (TripStatus.CANCELED, "start"),
        ],
    )
    async def test_guard_violation_leaves_status(
        self,
        orchestrator: TripOrchestrator,
        origin,
        destination,
        status: TripStatus,
        operation: str,
    ) -> None:
        trip = await trip_in_status(orchestrator, origin, destination, status)

        with pytest.raises(InvalidStateError) as exc_info:
            if operation == "finish":
                await orchestrator.finish(trip.id, 3.0, 7)
            else:
                await getattr(orchestrator, operation)(trip.id)

        assert exc_info.value.code == "INVALID_STATE"
        assert (await orchestrator.get(trip.id)).status == status

    @pytest.mark.asyncio
    async def test_finish_rejects_negative_metrics(
        self, orchestrator: TripOrchestrator, origin, destination
    ) -> None:
        trip = await trip_in_status(orchestrator, origin, destination, TripStatus.IN_TRIP)

        with pytest.raises(ValidationError):
            await orchestrator.finish(trip.id, -1.0, 10)

        assert (await orchestrator.get(trip.id)).status == TripStatus.IN_TRIP


class TestCancel:
    """Тесты отмены."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status",
        [
            TripStatus.DRIVER_SEARCHING,
            TripStatus.EN_ROUTE_TO_PICKUP,
            TripStatus.ARRIVED,
            TripStatus.IN_TRIP,
            TripStatus.EXPIRED,
        ],
    )
    async def test_cancel_allowed(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        origin,
        destination,
        status: TripStatus,
    ) -> None:
        trip = await trip_in_status(orchestrator, origin, destination, status)

        canceled = await orchestrator.cancel(trip.id, "passenger-1", "DRIVER_LATE", note="долго")

        assert canceled.status == TripStatus.CANCELED
        assert canceled.driver_id is None
        assert canceled.canceled_at is not None
        assert canceled.cancel_reason_code == "DRIVER_LATE"
        assert canceled.cancel_note == "долго"
        assert canceled.canceled_by == "passenger-1"

        event = (await repo.list_events(trip.id))[-1]
        assert event.type == TripEventType.CANCELED
        assert event.payload == {"by": "passenger-1", "reasonCode": "DRIVER_LATE", "note": "долго"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [TripStatus.COMPLETED, TripStatus.CANCELED])
    async def test_cancel_terminal_rejected(
        self, orchestrator: TripOrchestrator, origin, destination, status: TripStatus
    ) -> None:
        trip = await trip_in_status(orchestrator, origin, destination, status)

        with pytest.raises(InvalidStateError):
            await orchestrator.cancel(trip.id, "passenger-1", "ANY")

        assert (await orchestrator.get(trip.id)).status == status

    @pytest.mark.asyncio
    async def test_concurrent_cancel_happens_once(
        self, orchestrator: TripOrchestrator, repo: InMemoryTripRepository, origin, destination
    ) -> None:
        created = await orchestrator.create("passenger-1", origin, destination)

        results = await asyncio.gather(
            orchestrator.cancel(created.id, "passenger-1", "A"),
            orchestrator.cancel(created.id, "driver-1", "B"),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, Trip)) == 1
        assert sum(1 for r in results if isinstance(r, InvalidStateError)) == 1
        types = event_types(await repo.list_events(created.id))
        assert types.count(TripEventType.CANCELED) == 1

    @pytest.mark.asyncio
    async def test_reason_required(self, orchestrator: TripOrchestrator, origin, destination) -> None:
        created = await orchestrator.create("passenger-1", origin, destination)

        with pytest.raises(ValidationError):
            await orchestrator.cancel(created.id, "passenger-1", "")


class TestRate:
    """Тесты оценки поездки."""

    @pytest.mark.asyncio
    async def test_rate_requires_completed(
        self, orchestrator: TripOrchestrator, origin, destination
    ) -> None:
        trip = await trip_in_status(orchestrator, origin, destination, TripStatus.IN_TRIP)

        with pytest.raises(NotCompletedError) as exc_info:
            await orchestrator.rate(trip.id, "passenger-1", 5)

        assert exc_info.value.code == "NOT_COMPLETED"

    @pytest.mark.asyncio
    async def test_rate_upserts(
        self, orchestrator: TripOrchestrator, repo: InMemoryTripRepository, origin, destination
    ) -> None:
        """Повторная оценка обновляет запись, а не создаёт новую."""
        trip = await trip_in_status(orchestrator, origin, destination, TripStatus.COMPLETED)

        first = await orchestrator.rate(trip.id, "passenger-1", 3, "так себе")
        second = await orchestrator.rate(trip.id, "passenger-1", 5)

        stored = await repo.get_rating(trip.id)
        assert stored is not None
        assert stored.stars == 5
        assert stored.comment is None
        assert stored.driver_id == "driver-1"
        assert stored.created_at == first.created_at
        assert second.stars == 5

        rated = [e for e in await repo.list_events(trip.id) if e.type == TripEventType.RATED]
        assert [e.payload for e in rated] == [{"stars": 3}, {"stars": 5}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stars", [0, 6, -1, True, False, 4.5])
    async def test_stars_range(
        self, orchestrator: TripOrchestrator, origin, destination, stars: int
    ) -> None:
        trip = await trip_in_status(orchestrator, origin, destination, TripStatus.COMPLETED)

        with pytest.raises(ValidationError):
            await orchestrator.rate(trip.id, "passenger-1", stars)


# =============================================================================
# УВЕДОМЛЕНИЯ И ЖУРНАЛ
# =============================================================================

class TestNotifications:
    """Тесты доставки живых уведомлений."""

    @pytest.mark.asyncio
    async def test_only_existing_subscribers_get_cancel(
        self, orchestrator: TripOrchestrator, origin, destination
    ) -> None:
        created = await orchestrator.create("passenger-1", origin, destination)
        early = orchestrator.subscribe(created.id)

        await orchestrator.cancel(created.id, "passenger-1", "CHANGED_MIND")
        late = orchestrator.subscribe(created.id)

        received = await drain(early)
        assert [(n.type, n.data["status"]) for n in received] == [
            (NotificationType.STATUS_CHANGED, "CANCELED")
        ]
        assert await drain(late) == []

    @pytest.mark.asyncio
    async def test_trip_created_published(
        self, repo: InMemoryTripRepository, mock_users, mock_drivers, origin, destination
    ) -> None:
        notifier = AsyncMock(spec=TripNotifier)
        orchestrator = TripOrchestrator(repo, notifier, mock_users, mock_drivers)

        created = await orchestrator.create("passenger-1", origin, destination)

        notifier.publish.assert_awaited_once_with(
            created.id,
            NotificationType.TRIP_CREATED,
            {"id": created.id, "status": "DRIVER_SEARCHING"},
        )

    @pytest.mark.asyncio
    async def test_finish_notification_has_fare(
        self, orchestrator: TripOrchestrator, origin, destination
    ) -> None:
        trip = await trip_in_status(orchestrator, origin, destination, TripStatus.IN_TRIP)
        subscription = orchestrator.subscribe(trip.id)

        result = await orchestrator.finish(trip.id, 4.0, 9)

        (notification,) = await drain(subscription)
        assert notification.data == {"status": "COMPLETED", "finalFareTotal": result.final_fare_total}


class TestFailurePolicy:
    """Тесты политики сбоев хранилища."""

    @pytest.mark.asyncio
    async def test_event_write_failure_keeps_transition(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        origin,
        destination,
    ) -> None:
        trip = await trip_in_status(orchestrator, origin, destination, TripStatus.EN_ROUTE_TO_PICKUP)
        subscription = orchestrator.subscribe(trip.id)
        repo.append_event = AsyncMock(side_effect=RuntimeError("event store down"))

        updated = await orchestrator.arrive(trip.id)

        assert updated.status == TripStatus.ARRIVED
        assert len(await drain(subscription)) == 1

    @pytest.mark.asyncio
    async def test_status_write_failure_is_fatal(
        self,
        orchestrator: TripOrchestrator,
        repo: InMemoryTripRepository,
        origin,
        destination,
    ) -> None:
        trip = await trip_in_status(orchestrator, origin, destination, TripStatus.EN_ROUTE_TO_PICKUP)
        subscription = orchestrator.subscribe(trip.id)
        events_before = await repo.list_events(trip.id)
        repo.update_trip_status = AsyncMock(side_effect=OSError("connection reset"))

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await orchestrator.arrive(trip.id)

        assert exc_info.value.http_status == 503
        assert await drain(subscription) == []
        assert await repo.list_events(trip.id) == events_before


class TestHistory:
    """Тесты журнала и списка приглашений."""

    @pytest.mark.asyncio
    async def test_history_in_order(
        self, orchestrator: TripOrchestrator, origin, destination
    ) -> None:
        trip = await trip_in_status(orchestrator, origin, destination, TripStatus.COMPLETED)
        await orchestrator.rate(trip.id, "passenger-1", 4)

        history = await orchestrator.history(trip.id)

        assert event_types(history) == [
            TripEventType.DRIVER_SEARCH_STARTED,
            TripEventType.DRIVER_ACCEPTED,
            TripEventType.ARRIVED,
            TripEventType.STARTED,
            TripEventType.COMPLETED,
            TripEventType.RATED,
        ]
        assert all(e.trip_id == trip.id for e in history)

    @pytest.mark.asyncio
    async def test_history_unknown_trip(self, orchestrator: TripOrchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.history("missing")

    @pytest.mark.asyncio
    async def test_assignments(self, orchestrator: TripOrchestrator, origin, destination) -> None:
        created = await orchestrator.create("passenger-1", origin, destination)

        assignments = await orchestrator.assignments(created.id)

        assert len(assignments) == 3
