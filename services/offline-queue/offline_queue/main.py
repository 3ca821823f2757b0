from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from offline_queue.config import Settings, get_settings
from offline_queue.connectivity import ConnectivityMonitor
from offline_queue.coordinator import SyncCoordinator
from offline_queue.logging_config import configure_logging
from offline_queue.manager import OfflineQueueManager
from offline_queue.middleware import setup_middleware
from offline_queue.remote import HttpRemoteAuthority
from offline_queue.routers import conflicts, events, health, queue
from offline_queue.store import create_store

logger = logging.getLogger(__name__)


def build_coordinator(settings: Settings) -> tuple[SyncCoordinator, HttpRemoteAuthority]:
    """Wire the default store, HTTP remote and connectivity probe from settings."""
    store = create_store(settings)
    remote = HttpRemoteAuthority(
        settings.remote_base_url,
        settings.remote_token,
        timeout=settings.remote_timeout,
    )
    manager = OfflineQueueManager(store, remote, settings=settings)
    connectivity = ConnectivityMonitor(
        settings.connectivity_url,
        interval=settings.connectivity_interval,
        timeout=settings.connectivity_timeout,
    )
    return SyncCoordinator(manager, connectivity), remote


def create_app(
    *,
    settings: Settings | None = None,
    manager: OfflineQueueManager | None = None,
    coordinator: SyncCoordinator | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    owned_remote: HttpRemoteAuthority | None = None
    owns_store = False
    if coordinator is None:
        if manager is None:
            coordinator, owned_remote = build_coordinator(settings)
            owns_store = True
        else:
            coordinator = SyncCoordinator(manager)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await coordinator.start()
        logger.info(f"{settings.app_name} started ({settings.storage_backend} store)")
        try:
            yield
        finally:
            await coordinator.stop()
            if owned_remote is not None:
                await owned_remote.close()
            if owns_store:
                await coordinator.manager.store.close()
            logger.info(f"{settings.app_name} stopped")

    app = FastAPI(title=settings.app_name, version="0.1.0", debug=settings.debug, lifespan=lifespan)
    app.state.coordinator = coordinator
    setup_middleware(app)

    app.include_router(health.router)
    app.include_router(queue.router)
    app.include_router(conflicts.router)
    app.include_router(events.router)

    return app


app = create_app()
