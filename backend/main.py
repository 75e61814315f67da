"""
Dockwarden backend

Container update engine: registry digest checks, guarded pulls with a
vulnerability gate, compose-aware recreation, and the self-update handoff.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from api import self_update_routes, update_routes
from config.paths import DATABASE_PATH, ensure_data_dirs
from config.settings import AppConfig, PollingRequestFilter, setup_logging
from database import get_database_manager
from updates.engine import close_engines

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # Fail fast on misconfiguration
    AppConfig.validate()
    ensure_data_dirs()

    logger.info("Starting Dockwarden backend...")

    # Must be reapplied once uvicorn has configured its own loggers
    logging.getLogger("uvicorn.access").addFilter(PollingRequestFilter())

    db = get_database_manager()
    logger.info(f"Database ready at {DATABASE_PATH}")

    yield

    logger.info("Shutting down Dockwarden backend...")
    try:
        await asyncio.to_thread(close_engines)
        logger.info("Engine clients closed")
    except Exception as e:
        logger.error(f"Error closing engine clients: {e}")

    try:
        await asyncio.to_thread(db.engine.dispose)
        logger.info("SQLAlchemy engine disposed")
    except Exception as e:
        logger.error(f"Error disposing database engine: {e}")


app = FastAPI(
    title="Dockwarden API",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(update_routes.router)
app.include_router(self_update_routes.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for container health checks"""
    return {"status": "healthy", "service": "dockwarden-backend"}


if __name__ == "__main__":
    uvicorn.run(app, host=AppConfig.HOST, port=AppConfig.PORT, log_level=AppConfig.LOG_LEVEL.lower())
