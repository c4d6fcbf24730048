"""FastAPI application factory for the alerting query/admin surface."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator

from fastapi import FastAPI

from alertflow import __version__
from alertflow.api.routers import alerts, channels, health
from alertflow.service import AlertingService


def create_app(service: AlertingService, *, run_service: bool = False) -> FastAPI:
    """Build the FastAPI app around *service*.

    The service is injected into each router via its ``init_router()``.
    With *run_service*, the poll and timer loop runs for the lifetime of
    the app.
    """

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if not run_service:
            yield
            return
        stop = asyncio.Event()
        task = asyncio.create_task(service.run(stop))
        try:
            yield
        finally:
            stop.set()
            await task

    app = FastAPI(
        title="alertflow",
        version=__version__,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    health.init_router(service)
    alerts.init_router(service)
    channels.init_router(service)

    app.include_router(health.router)
    app.include_router(alerts.router)
    app.include_router(channels.router)
    return app
