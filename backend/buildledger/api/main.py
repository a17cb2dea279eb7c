"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes all routers and
sets up startup and shutdown events. When run with uvicorn it
initialises the database, makes sure the receipts bucket exists and
loads configuration from ``buildledger.core.config``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.exception_handlers import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from buildledger import __version__
from buildledger.api.dependencies import get_object_store
from buildledger.api.endpoints.health import router as health_router
from buildledger.api.error_handlers import (
    generic_exception_handler,
    pipeline_exception_handler,
    validation_exception_handler,
)
from buildledger.api.routes.files import router as files_router
from buildledger.api.routes.jobs import router as jobs_router
from buildledger.api.routes.receipts import router as receipts_router
from buildledger.core.config import settings
from buildledger.core.database import get_db_debug_info, init_db
from buildledger.core.exceptions import ReceiptPipelineError
from buildledger.core.observability import init_sentry

# Configure logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    # Startup
    logger.info("Starting up...")
    # Centralised Sentry init (idempotent)
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    await init_db()
    await asyncio.to_thread(get_object_store().ensure_bucket)
    yield
    # Shutdown
    logger.info("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="BuildLedger API",
    version=__version__,
    lifespan=lifespan,
)


# Middleware to enrich Sentry scope with lightweight request info
@app.middleware("http")
async def sentry_context_middleware(request: Request, call_next):  # type: ignore
    if settings.SENTRY_DSN:
        scope = sentry_sdk.get_current_scope()
        scope.set_tag("path", request.url.path)
        scope.set_tag("method", request.method)
    response = await call_next(request)
    return response


"""CORS configuration.

In development allow all origins; otherwise use BACKEND_CORS_ORIGINS as
configured (deduplicated, order preserved).
"""
env_is_dev = (settings.ENVIRONMENT or "development").lower() == "development"
allow_origins = ["*"] if env_is_dev else list(dict.fromkeys(settings.BACKEND_CORS_ORIGINS or []))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=not env_is_dev,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register custom exception handlers
app.add_exception_handler(ReceiptPipelineError, pipeline_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Include routers
app.include_router(health_router)
app.include_router(receipts_router)
app.include_router(jobs_router)
app.include_router(files_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Welcome to the BuildLedger Receipts API"}


@app.get("/debug/db")
async def db_debug():
    """Return non-sensitive DB diagnostics (development only)."""
    if (settings.ENVIRONMENT or "development").lower() != "development":
        return {"ok": False, "message": "disabled in non-development env"}
    return get_db_debug_info()
