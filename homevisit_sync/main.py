"""
Home Visit Sync - offline-first sync service for home-visit medical staff.
Exposes sync status and "sync now" triggers over HTTP.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import sync
from .core.config import settings
from .models.base import Base, engine
from .models.registry import SYNC_ORDER
from .seed_demo import seed_demo_data
from .services.device_conditions import ConnectivityMonitor, DeviceConditions
from .services.record_store import LocalRecordStore
from .services.remote_client import HttpRemoteAuthority, RemoteAuthority
from .services.sync_engine import SyncEngine
from .services.sync_orchestrator import SyncOrchestrator

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# NOTE: In production, use Alembic migrations instead of create_all()
Base.metadata.create_all(bind=engine)


def build_orchestrator(
    store: Optional[LocalRecordStore] = None,
    remote: Optional[RemoteAuthority] = None,
    conditions: Optional[DeviceConditions] = None,
) -> SyncOrchestrator:
    """Wire one engine per entity type to a shared store and remote."""
    store = store or LocalRecordStore()
    remote = remote or HttpRemoteAuthority()
    if conditions is None:
        conditions = ConnectivityMonitor(client=remote) if isinstance(remote, HttpRemoteAuthority) else DeviceConditions()
    engines = {entity_type: SyncEngine(entity_type, store, remote) for entity_type in SYNC_ORDER}
    return SyncOrchestrator(engines, conditions)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.SEED_DEMO_DATA:
        seed_demo_data()
    orchestrator = build_orchestrator()
    orchestrator.schedule_default_periodic()
    app.state.orchestrator = orchestrator
    logger.info("%s %s started", settings.APP_NAME, settings.VERSION)
    try:
        yield
    finally:
        orchestrator.shutdown()


app = FastAPI(
    title=f"{settings.APP_NAME} API",
    description=(
        "Offline-first synchronization for home-visit staff: patients, visits "
        "and visit protocols edited on the device are pushed to the backend."
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

app.include_router(sync.router, prefix="/api/v1")


@app.get("/health")
def health_check():
    orchestrator = getattr(app.state, "orchestrator", None)
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.VERSION,
        "syncing": orchestrator.is_syncing() if orchestrator else False,
    }
