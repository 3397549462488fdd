"""FastAPI application factory with lifespan for padbridge."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from padbridge import __version__
from padbridge.channels.monitor import MonitorManager
from padbridge.settings import get_settings


def create_app(manager: MonitorManager | None = None, start_monitors: bool = True) -> FastAPI:
    """Build the app; with a manager, its monitors run for the app's lifetime."""
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manager is not None and start_monitors:
            await manager.start_all()
        yield
        if manager is not None:
            await manager.stop_all()

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        lifespan=lifespan,
    )
    if manager is not None:
        app.state.monitor_manager = manager
        app.state.webhook_registry = manager.registry

    # ── mount routers ──
    from padbridge.api.routes import health, webhook

    app.include_router(health.router)
    app.include_router(webhook.router, tags=["wechatpadpro"])

    return app
