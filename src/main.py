"""pgcluster control plane application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.api.routes import backups, clusters, exports, health, monitoring, restores
from src.config import settings
from src.core.control_plane import build_control_plane
from src.core.dispatcher import dispatcher
from src.core.scheduler import maintenance_scheduler
from src.db.database import async_session_factory, close_db, init_db

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
# asyncssh logs every channel open at INFO
logging.getLogger("asyncssh").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting pgcluster control plane...")

    await init_db()
    logger.info("Database initialized")

    control_plane = build_control_plane(async_session_factory, settings, dispatcher)
    app.state.control_plane = control_plane

    dispatcher.start()
    async with async_session_factory() as db:
        await control_plane.resume_workflows(db)

    if settings.scheduler_enabled:
        maintenance_scheduler.configure(control_plane.backups, control_plane.dns_sync, settings.backup)
        maintenance_scheduler.start()
    else:
        logger.info("Scheduler disabled")

    yield

    logger.info("Shutting down pgcluster control plane...")
    maintenance_scheduler.shutdown(wait=False)
    await dispatcher.stop()
    await control_plane.close()
    await close_db()
    logger.info("Shutdown complete")


app = FastAPI(
    title="pgcluster",
    description="Control plane for replicated PostgreSQL clusters",
    version="0.1.0",
    lifespan=lifespan,
)

# Mount API routes
app.include_router(clusters.router, prefix="/api/v1", tags=["clusters"])
app.include_router(backups.router, prefix="/api/v1", tags=["backups"])
app.include_router(restores.router, prefix="/api/v1", tags=["restores"])
app.include_router(exports.router, prefix="/api/v1", tags=["exports"])
app.include_router(monitoring.router, prefix="/api/v1", tags=["monitoring"])
app.include_router(health.router, tags=["health"])


def main():
    """Run the application."""
    import uvicorn
    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )


if __name__ == "__main__":
    main()
