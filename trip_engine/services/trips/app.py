# trip_engine/services/trips/app.py
"""
FastAPI приложение Trip Service.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from trip_engine.common.constants import TypeMsg
from trip_engine.common.errors import TripError
from trip_engine.common.logger import log_error, log_info
from trip_engine.config import settings
from trip_engine.core.trips.models import (
    AcceptResult,
    FinishResult,
    Quote,
    Trip,
    TripAssignment,
    TripCreated,
    TripEvent,
)
from trip_engine.core.trips.service import TripOrchestrator
from trip_engine.infra.trip_notifier import Notification, Subscription
from trip_engine.services.trips.dependencies import (
    TripContainer,
    actor_id,
    get_container,
    get_orchestrator,
    init_dependencies,
    require_bearer,
)
from trip_engine.services.trips.schemas import (
    CancelRequest,
    CreateTripRequest,
    ErrorResponse,
    FinishRequest,
    HealthStatus,
    OkResponse,
    QuoteRequest,
    RateRequest,
    SuccessResponse,
)


# =============================================================================
# SSE
# =============================================================================

def format_sse(notification: Notification) -> str:
    """Кадр text/event-stream: event + data (JSON)."""
    data = json.dumps(notification.data, ensure_ascii=False, default=str)
    return f"event: {notification.type}\ndata: {data}\n\n"


async def event_stream(
    request: Request,
    subscription: Subscription,
    keepalive: float,
) -> AsyncGenerator[str, None]:
    """
    Поток уведомлений поездки до отключения клиента.
    Между событиями шлёт комментарии keep-alive.
    """
    try:
        yield ": connected\n\n"
        while not await request.is_disconnected():
            notification = await subscription.get(timeout=keepalive)
            if notification is None:
                if subscription.closed:
                    break
                yield ": keep-alive\n\n"
                continue
            yield format_sse(notification)
    finally:
        subscription.close()


# =============================================================================
# ПРИЛОЖЕНИЕ
# =============================================================================

def create_app(container: Optional[TripContainer] = None) -> FastAPI:
    """
    Создаёт приложение.

    Args:
        container: Готовые зависимости (тесты). Если None, собираются по конфигу в lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Жизненный цикл приложения."""
        await log_info("Trip Service запускается...", type_msg=TypeMsg.INFO)

        app.state.container = container or await init_dependencies()

        yield

        await app.state.container.close()
        await log_info("Trip Service остановлен", type_msg=TypeMsg.INFO)

    app = FastAPI(
        title="Trip Service",
        description="Оркестрация поездок: котировка, поиск водителя, жизненный цикл, уведомления",
        version=settings.system.VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_exception_handlers(app)
    _register_routes(app)
    return app


def _error(status_code: int, error_code: str, message: str, details: Any = None) -> JSONResponse:
    body = ErrorResponse(error_code=error_code, message=message, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(TripError)
    async def trip_error_handler(request: Request, exc: TripError) -> JSONResponse:
        if exc.http_status >= 500:
            await log_error(f"{request.method} {request.url.path}: {exc.code} {exc.message}")
        return _error(exc.http_status, exc.code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()
        ]
        return _error(
            status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", "invalid request", {"errors": errors}
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        code = "UNAUTHORIZED" if exc.status_code == 401 else "HTTP_ERROR"
        response = _error(exc.status_code, code, str(exc.detail))
        if exc.headers:
            response.headers.update(exc.headers)
        return response


def _register_routes(app: FastAPI) -> None:
    guarded = [Depends(require_bearer)]

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    @app.get("/health", response_model=HealthStatus, tags=["Health"])
    @app.get("/v1/health", response_model=HealthStatus, tags=["Health"], include_in_schema=False)
    async def health_check(container: TripContainer = Depends(get_container)) -> HealthStatus:
        """Проверка здоровья сервиса."""
        deps: dict[str, str] = {}

        if container.db is not None:
            deps["postgres"] = "healthy" if await container.db.health_check() else "unhealthy"
        else:
            deps["storage"] = "memory"

        overall = "healthy" if "unhealthy" not in deps.values() else "degraded"

        return HealthStatus(
            service="trip_service",
            status=overall,
            version=settings.system.VERSION,
            dependencies=deps,
            notifier=container.notifier.get_stats(),
        )

    # =========================================================================
    # TRIPS API
    # =========================================================================

    @app.post("/v1/trips/quote", response_model=Quote, tags=["Trips"], dependencies=guarded)
    async def quote(
        body: QuoteRequest,
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> Quote:
        """Котировка без создания поездки."""
        return orchestrator.quote(body.origin, body.destination, body.service_type)

    @app.post(
        "/v1/trips",
        response_model=TripCreated,
        status_code=status.HTTP_201_CREATED,
        tags=["Trips"],
        dependencies=guarded,
        responses={503: {"model": ErrorResponse}},
    )
    async def create_trip(
        body: CreateTripRequest,
        user_id: Optional[str] = Depends(actor_id),
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> TripCreated:
        """Создание поездки и запуск поиска водителя."""
        return await orchestrator.create(
            user_id or "passenger",
            body.origin,
            body.destination,
            note=body.note,
            payment_method_id=body.payment_method_id,
        )

    @app.get(
        "/v1/trips/{trip_id}",
        response_model=Trip,
        tags=["Trips"],
        dependencies=guarded,
        responses={404: {"model": ErrorResponse, "description": "Поездка не найдена"}},
    )
    async def get_trip(
        trip_id: str,
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> Trip:
        return await orchestrator.get(trip_id)

    @app.post(
        "/v1/trips/{trip_id}/cancel",
        response_model=SuccessResponse,
        tags=["Trips"],
        dependencies=guarded,
    )
    async def cancel_trip(
        trip_id: str,
        body: CancelRequest,
        user_id: Optional[str] = Depends(actor_id),
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> SuccessResponse:
        await orchestrator.cancel(trip_id, user_id or "unknown", body.reason_code, body.note)
        return SuccessResponse()

    @app.post(
        "/v1/trips/{trip_id}/rate",
        response_model=OkResponse,
        tags=["Trips"],
        dependencies=guarded,
    )
    async def rate_trip(
        trip_id: str,
        body: RateRequest,
        user_id: Optional[str] = Depends(actor_id),
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> OkResponse:
        await orchestrator.rate(trip_id, user_id or "unknown", body.stars, body.comment)
        return OkResponse()

    # =========================================================================
    # DRIVER ACTIONS
    # =========================================================================

    @app.post(
        "/v1/trips/{trip_id}/accept",
        response_model=AcceptResult,
        response_model_exclude_none=True,
        tags=["Driver"],
        dependencies=guarded,
    )
    async def accept_trip(
        trip_id: str,
        user_id: Optional[str] = Depends(actor_id),
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> AcceptResult:
        return await orchestrator.accept(trip_id, user_id or "driver")

    @app.post(
        "/v1/trips/{trip_id}/decline",
        response_model=OkResponse,
        tags=["Driver"],
        dependencies=guarded,
    )
    async def decline_trip(
        trip_id: str,
        user_id: Optional[str] = Depends(actor_id),
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> OkResponse:
        return OkResponse(ok=await orchestrator.decline(trip_id, user_id or "driver"))

    @app.post(
        "/v1/trips/{trip_id}/arrive-pickup",
        response_model=OkResponse,
        tags=["Driver"],
        dependencies=guarded,
    )
    async def arrive_pickup(
        trip_id: str,
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> OkResponse:
        await orchestrator.arrive(trip_id)
        return OkResponse()

    @app.post(
        "/v1/trips/{trip_id}/start",
        response_model=OkResponse,
        tags=["Driver"],
        dependencies=guarded,
    )
    async def start_trip(
        trip_id: str,
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> OkResponse:
        await orchestrator.start(trip_id)
        return OkResponse()

    @app.post(
        "/v1/trips/{trip_id}/finish",
        response_model=FinishResult,
        tags=["Driver"],
        dependencies=guarded,
    )
    async def finish_trip(
        trip_id: str,
        body: FinishRequest,
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> FinishResult:
        return await orchestrator.finish(
            trip_id, body.actual_distance_km, body.actual_duration_min
        )

    # =========================================================================
    # СИГНАЛЫ СЕРВИСА ВОДИТЕЛЕЙ
    # =========================================================================

    @app.post(
        "/v1/trips/{trip_id}/expire",
        response_model=OkResponse,
        tags=["Matching"],
        dependencies=guarded,
    )
    async def expire_trip(
        trip_id: str,
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> OkResponse:
        """Таймаут поиска водителя."""
        await orchestrator.expire(trip_id)
        return OkResponse()

    @app.post(
        "/v1/trips/{trip_id}/assignments/{driver_id}/expire",
        response_model=OkResponse,
        tags=["Matching"],
        dependencies=guarded,
    )
    async def expire_invitation(
        trip_id: str,
        driver_id: str,
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> OkResponse:
        """Истёк TTL приглашения водителя."""
        return OkResponse(ok=await orchestrator.expire_invitation(trip_id, driver_id))

    @app.get(
        "/v1/trips/{trip_id}/assignments",
        response_model=list[TripAssignment],
        tags=["Matching"],
        dependencies=guarded,
    )
    async def list_assignments(
        trip_id: str,
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> list[TripAssignment]:
        return await orchestrator.assignments(trip_id)

    # =========================================================================
    # EVENTS
    # =========================================================================

    @app.get(
        "/v1/trips/{trip_id}/events/history",
        response_model=list[TripEvent],
        tags=["Events"],
        dependencies=guarded,
    )
    async def trip_history(
        trip_id: str,
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> list[TripEvent]:
        """Журнал поездки в порядке записи."""
        return await orchestrator.history(trip_id)

    @app.get("/v1/trips/{trip_id}/events", tags=["Events"])
    async def trip_events(
        trip_id: str,
        request: Request,
        orchestrator: TripOrchestrator = Depends(get_orchestrator),
    ) -> StreamingResponse:
        """
        Живые уведомления поездки (Server-Sent Events).
        Только события после подключения, история в /events/history.
        """
        subscription = orchestrator.subscribe(trip_id)
        return StreamingResponse(
            event_stream(request, subscription, settings.notifier.SSE_KEEPALIVE_SECONDS),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )


app = create_app()
