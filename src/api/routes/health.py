"""Health check endpoint."""
from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.dispatcher import dispatcher
from src.core.scheduler import maintenance_scheduler
from src.db.database import get_db

router = APIRouter()


@router.get("/health")
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """Liveness plus the state of the database and background machinery."""
    try:
        await db.execute(text("SELECT 1"))
        database_ok = True
    except SQLAlchemyError:
        database_ok = False

    return {
        "status": "healthy" if database_ok else "degraded",
        "database": database_ok,
        "dispatcher_running": dispatcher.running,
        "dispatcher_workers": dispatcher.worker_count,
        "scheduler_running": maintenance_scheduler.is_running(),
        "control_plane_ready": getattr(request.app.state, "control_plane", None) is not None,
    }
