"""
Form Fighter Feedback Service: FastAPI Application

This is the entry point for the backend. It:
1. Creates the FastAPI app instance
2. Configures logging and CORS
3. Registers route handlers
4. Sets up startup/shutdown lifecycle events

Run with:
    uvicorn app.main:app --reload --port 8000
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import init_db
from app.routers import captures, feedback
from app.services.feedback import reset_controller_registry
from app.services.upload import close_upload_service

# IMPORTANT: Import models so SQLAlchemy registers them with Base.metadata
# before init_db() calls create_all(). Without this, no tables get created.
import app.models  # noqa: F401

logger = logging.getLogger("app")


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic.

    Code before 'yield' runs on startup.
    Code after 'yield' runs on shutdown.
    """
    # --- Startup ---
    configure_logging()
    logger.info("🚀 Starting Form Fighter Feedback API...")
    await init_db()  # Create tables if they don't exist
    logger.info("✅ Database tables created/verified")

    yield  # App is running, handling requests

    # --- Shutdown ---
    # Live subscriptions are released; uploads already in flight are not aborted
    reset_controller_registry()
    await close_upload_service()
    logger.info("👋 Shutting down...")


app = FastAPI(
    title="Form Fighter Feedback API",
    description="Punch video submission, feedback tracking and score statistics",
    version="1.0.0",
    lifespan=lifespan,
)

# --- CORS Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(captures.router)
app.include_router(feedback.router)


# --- Health Check Endpoints ---

@app.get("/", tags=["health"])
async def root():
    """Root endpoint: confirms the API is alive."""
    return {
        "service": "Form Fighter Feedback",
        "status": "running",
        "version": "1.0.0",
    }


@app.get("/health", tags=["health"])
async def health_check():
    """Detailed health check: verifies database connectivity."""
    from sqlalchemy import text

    from app.database import AsyncSessionLocal

    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "database": db_status,
        "environment": settings.APP_ENV,
    }
