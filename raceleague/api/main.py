"""
Race League Match Server

FastAPI app hosting the match lifecycle workers (job queue, recovery,
deadline sweep) and the live match update feed.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from raceleague.database import db
from raceleague.api.routes import router
from raceleague.services.deadline_service import get_deadline_service
from raceleague.services.job_queue import get_job_queue
from raceleague.services.match_orchestrator import get_match_orchestrator
from raceleague.services.recovery_service import get_recovery_service
from raceleague.services.recurring_schedule_service import get_replenishment_service
from raceleague.services.websocket_manager import get_websocket_manager, WEBSOCKET_TIMEOUT_SECONDS

# Allow log level to be configured via environment variable (default: INFO)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    logger.info("Starting up Race League match server...")

    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)

    # Handlers must be registered before the queue worker starts
    try:
        get_match_orchestrator().register_job_handlers(get_job_queue())
        logger.info("✓ Match job handlers registered")
    except Exception as e:
        logger.error(f"Failed to register match job handlers: {e}", exc_info=True)

    try:
        get_job_queue().start_background_worker()
        logger.info("✓ Job queue worker started")
    except Exception as e:
        logger.error(f"Failed to start job queue worker: {e}", exc_info=True)

    try:
        get_recovery_service().start()
        logger.info("✓ Recovery worker started")
    except Exception as e:
        logger.error(f"Failed to start recovery worker: {e}", exc_info=True)

    try:
        get_deadline_service().start()
        logger.info("✓ Deadline worker started")
    except Exception as e:
        logger.error(f"Failed to start deadline worker: {e}", exc_info=True)

    try:
        get_replenishment_service().start()
        logger.info("✓ Schedule replenishment worker started")
    except Exception as e:
        logger.error(f"Failed to start schedule replenishment worker: {e}", exc_info=True)

    yield  # App is running

    logger.info("Shutting down Race League match server...")

    try:
        get_replenishment_service().stop()
        logger.info("✓ Schedule replenishment worker stopped")
    except Exception as e:
        logger.error(f"Error stopping schedule replenishment worker: {e}", exc_info=True)

    try:
        get_deadline_service().stop()
        logger.info("✓ Deadline worker stopped")
    except Exception as e:
        logger.error(f"Error stopping deadline worker: {e}", exc_info=True)

    try:
        get_recovery_service().stop()
        logger.info("✓ Recovery worker stopped")
    except Exception as e:
        logger.error(f"Error stopping recovery worker: {e}", exc_info=True)

    try:
        get_job_queue().stop_background_worker()
        logger.info("✓ Job queue worker stopped")
    except Exception as e:
        logger.error(f"Error stopping job queue worker: {e}", exc_info=True)


app = FastAPI(
    title="Race League Match Server",
    description="Match lifecycle orchestration and rating engine for an online racing league",
    version="1.0.0",
    lifespan=lifespan,
)

# Origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(router)


@app.get("/api/health")
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Service status and live connection count
    """
    return {
        "status": "healthy",
        "message": "API is running",
        "live_connections": await get_websocket_manager().get_connection_count(),
    }


@app.websocket("/ws/matches")
async def websocket_matches(websocket: WebSocket):
    """
    Live match update feed.

    Clients receive every lifecycle event as {"event": ..., "data": ...}.
    They may send "ping" to keep the connection alive.
    """
    await websocket.accept()
    manager = get_websocket_manager()
    await manager.connect(websocket)

    try:
        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_text(), timeout=WEBSOCKET_TIMEOUT_SECONDS
                )
                await manager.update_activity(websocket)
                if data == "ping":
                    await websocket.send_text("pong")
            except asyncio.TimeoutError:
                # Ping the connection; a dead socket ends the loop
                try:
                    await websocket.send_text("ping")
                except Exception:
                    break
    except WebSocketDisconnect:
        logger.info("Live update client closed the connection")
    except Exception as e:
        logger.error(f"Live update connection error: {e}")
    finally:
        await manager.disconnect(websocket)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
