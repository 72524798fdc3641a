from fastapi import FastAPI
import uvicorn
import logging
from contextlib import asynccontextmanager

from attendance_sync.api.v1 import sync
from attendance_sync.core.config import settings
from attendance_sync.core.database import init_db
from attendance_sync.core.logging import configure_logging
from attendance_sync.tasks.sync_tasks import get_sync_task_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL, settings.LOG_FILE)

    # Initialize database
    await init_db()

    yield

    # Let running syncs checkpoint before shutdown
    await get_sync_task_manager().stop()


app = FastAPI(
    title="Attendance Sync API",
    description="Resumable school-year attendance sync from the Aeries SIS",
    version="1.0.0",
    lifespan=lifespan
)

# Include API routers
app.include_router(sync.router, prefix="/api/v1/sync", tags=["sync"])


@app.get("/")
async def root():
    return {"message": "Attendance Sync API"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run(
        "attendance_sync.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
