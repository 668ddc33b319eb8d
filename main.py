#!/usr/bin/env python3
# main.py
"""
Точка входа Trip Service.
Запускает FastAPI приложение через uvicorn.
"""

from __future__ import annotations

import asyncio
import sys

import uvicorn

from trip_engine.common.constants import TypeMsg
from trip_engine.common.logger import log_error, log_info, setup_logging
from trip_engine.config import settings


async def main() -> None:
    """Запуск Trip Service."""
    setup_logging()

    await log_info(
        f"Запуск Trip Service на {settings.deployment.TRIP_SERVICE_HOST}:"
        f"{settings.deployment.TRIP_SERVICE_PORT} (storage={settings.database.STORAGE_BACKEND})",
        type_msg=TypeMsg.INFO,
    )

    config = uvicorn.Config(
        "trip_engine.services.trips.app:app",
        host=settings.deployment.TRIP_SERVICE_HOST,
        port=settings.deployment.TRIP_SERVICE_PORT,
        reload=settings.system.DEBUG,
        log_level="debug" if settings.system.DEBUG else "info",
    )

    server = uvicorn.Server(config)
    await server.serve()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        asyncio.run(log_error(f"Trip Service упал: {e}", exc_info=True))
        sys.exit(1)
