"""
TSOAM Church Management - Offline Sync Service
Keeps member, welfare, HR, finance and appointment edits flowing while the
church API is unreachable, replaying them in order once it is back.
"""
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import offline
from .core.config import Settings, settings as default_settings
from .services.cache_worker import ModuleCacheWarmer
from .services.connectivity import HttpProbeConnectivity
from .services.offline_service import OfflineService
from .services.offline_store import build_store
from .services.remote_api import RemoteApi


def build_offline_service(settings: Settings) -> OfflineService:
    """Assemble the offline service from configuration."""
    store = build_store(settings.OFFLINE_STORE_BACKEND, settings.OFFLINE_DATABASE_URL)
    remote = RemoteApi(
        base_url=settings.API_BASE_URL,
        module_endpoints=settings.MODULE_ENDPOINTS,
        timeout=settings.REMOTE_TIMEOUT,
    )
    connectivity = HttpProbeConnectivity(
        base_url=settings.API_BASE_URL,
        probe_path=settings.CONNECTIVITY_PROBE_PATH,
        interval=settings.CONNECTIVITY_CHECK_INTERVAL,
    )
    service = OfflineService(
        store,
        remote,
        connectivity,
        sync_interval=settings.SYNC_INTERVAL_SECONDS,
        max_retries=settings.MAX_RETRIES,
        stale_after_hours=settings.STALE_OPERATION_HOURS,
        stale_retry_threshold=settings.STALE_RETRY_THRESHOLD,
        auth_token=settings.API_AUTH_TOKEN,
    )
    if settings.PREFETCH_MODULES:
        service.cache_worker = ModuleCacheWarmer(remote, service.cache, settings.PREFETCH_MODULES)
    return service


def create_app(
    settings: Optional[Settings] = None,
    service_factory: Callable[[Settings], OfflineService] = build_offline_service,
) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(level=settings.LOG_LEVEL)
        service = service_factory(settings)
        await service.start()
        app.state.offline_service = service
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(
        title="TSOAM Offline Sync API",
        description=(
            "Offline operation queue for the TSOAM church management dashboard: "
            "queued member, welfare, HR, finance and appointment edits are "
            "replayed against the church API when connectivity returns."
        ),
        version=settings.VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(offline.router, prefix="/api/v1")

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "service": settings.APP_NAME, "version": settings.VERSION}

    return app


app = create_app()
