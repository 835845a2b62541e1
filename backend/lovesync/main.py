"""
LoveSite Sync - offline-first sync API for the LoveSite collections.

Serves the local snapshot of every collection, accepts optimistic local edits
and reconciles them with the remote document store in the background.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .api import records, sync
from .core.config import Settings, settings as default_settings
from .seed_demo import seed_demo_data
from .services.local_store import LocalStore
from .services.memory_remote import InMemoryRemoteClient
from .services.remote_client import HttpRemoteClient, RemoteClient
from .services.sync_coordinator import SyncCoordinator

logger = logging.getLogger(__name__)


def build_remote(settings: Settings) -> RemoteClient:
    if settings.REMOTE_MOCK_MODE:
        remote = InMemoryRemoteClient()
        if settings.SEED_DEMO_DATA:
            seed_demo_data(remote)
        logger.info("Using in-memory remote store (mock mode)")
        return remote
    return HttpRemoteClient(
        app_id=settings.REMOTE_APP_ID or "",
        app_key=settings.REMOTE_APP_KEY or "",
        server_url=settings.REMOTE_SERVER_URL,
        timeout=settings.REMOTE_TIMEOUT,
        poll_interval=settings.REMOTE_POLL_INTERVAL_SECONDS,
    )


def create_app(
    settings: Optional[Settings] = None,
    remote: Optional[RemoteClient] = None,
    store: Optional[LocalStore] = None,
) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(level=settings.LOG_LEVEL)
        remote_client = remote or build_remote(settings)
        local_store = store or LocalStore(
            settings.LOCAL_STORE_URL, key_prefix=settings.LOCAL_STORE_KEY_PREFIX
        )
        coordinator = SyncCoordinator(remote_client, local_store, settings)
        app.state.coordinator = coordinator
        # Serves local data at once; the remote store is reached in the background
        coordinator.start()
        try:
            yield
        finally:
            await coordinator.close()
            await remote_client.aclose()
            local_store.close()
            app.state.coordinator = None

    app = FastAPI(
        title="LoveSite Sync API",
        description=(
            "Offline-first sync for photos, diary entries, messages, anniversaries "
            "and settings. Local edits are applied immediately and reconciled with "
            "the remote document store in the background."
        ),
        version=settings.VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(records.router, prefix="/api/v1")
    app.include_router(sync.router, prefix="/api/v1")

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "service": settings.APP_NAME, "version": settings.VERSION}

    return app


app = create_app()
