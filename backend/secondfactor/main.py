"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware

from secondfactor import __version__
from secondfactor.config import get_settings
from secondfactor.database import close_db, init_db
from secondfactor.routers import (
    admin_router,
    health_router,
    metrics_router,
    two_factor_router,
)

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting SecondFactor...")

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    yield

    # Shutdown
    logger.info("Shutting down SecondFactor...")
    await close_db()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="SecondFactor",
    description="TOTP enrollment, verification and backup-code recovery",
    version=__version__,
    lifespan=lifespan,
)

# Session carries the user id set by the primary login flow
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret,
    max_age=86400,  # 24 hours
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health_router)
app.include_router(metrics_router)
app.include_router(two_factor_router)
app.include_router(admin_router)


@app.get("/")
async def root():
    """Root endpoint - shows API info."""
    return {
        "name": "SecondFactor",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }
