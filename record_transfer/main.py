"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers all API routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.dependencies import get_staging_store
from .api.routers import export, imports, jobs
from .core.config import settings
from .core.logging_config import configure_logging

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the staging store (and apply its migrations) before serving."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping staging store bootstrap during startup")
        yield
        return

    try:
        get_staging_store()
        logger.info("Staging store ready")
    except Exception as e:
        logger.error("Failed to open the staging store: %s", e, exc_info=True)
        raise

    yield


app = FastAPI(
    title="Record Transfer API",
    version="1.0.0",
    description="Bulk import and export of records between files and a remote record store",
    lifespan=lifespan
)

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(imports.router)
app.include_router(jobs.router)
app.include_router(export.router)


@app.get("/")
async def root():
    """Root endpoint returning API information."""
    return {
        "message": "Record Transfer API",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "record-transfer-api"
    }
