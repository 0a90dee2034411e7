"""
Pulse Analytics Sync
Main FastAPI application
"""
from fastapi import FastAPI
from contextlib import asynccontextmanager

from pulse_sync.config import get_settings
from pulse_sync.utils.logger import log
from pulse_sync import __version__

# Import routers
from pulse_sync.api import dashboard, health, sync

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    # Bootstrap credential files from env vars (for PaaS hosts)
    from pulse_sync.utils.credentials import bootstrap_credentials
    bootstrap_credentials(settings)

    from pulse_sync.models.base import init_db
    init_db()
    log.info("Database initialized")

    engine = sync.get_engine()
    engine.queue.start()

    if settings.enable_scheduler:
        from pulse_sync.scheduler import start_scheduler
        start_scheduler(engine)

    yield

    # Shutdown
    if settings.enable_scheduler:
        from pulse_sync.scheduler import stop_scheduler
        stop_scheduler()
    await engine.queue.stop()
    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    GA4 synchronization engine

    - Rolling 15-month GA4 history per client, daily detail for recent months
    - At most one concurrent fetch per client and period
    - Aged daily rows compacted into monthly aggregates
    - Cached dashboard aggregates built only from stored records
    """,
    lifespan=lifespan
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(sync.router)
app.include_router(dashboard.router)


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": __version__,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "pulse_sync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug
    )
