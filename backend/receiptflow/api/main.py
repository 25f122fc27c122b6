"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes all routers and sets up
the startup and shutdown lifecycle.  When run with uvicorn it initialises
the database and loads configuration from ``receiptflow.core.config``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exception_handlers import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from receiptflow.api.endpoints.health import router as health_router
from receiptflow.api.error_handlers import (
    generic_exception_handler,
    receipt_error_handler,
    validation_exception_handler,
)
from receiptflow.api.routes.files import router as files_router
from receiptflow.api.routes.receipts import router as receipts_router
from receiptflow.api.routes.usage import router as usage_router
from receiptflow.core.config import settings
from receiptflow.core.database import get_db_debug_info, init_db
from receiptflow.core.errors import ReceiptError
from receiptflow.core.observability import init_sentry

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("Starting up...")
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    await init_db()
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title=f"{settings.PROJECT_NAME} API",
    version="1.0.0",
    lifespan=lifespan,
)

# In development allow every origin; otherwise use BACKEND_CORS_ORIGINS
env_is_dev = (settings.ENVIRONMENT or "development").lower() == "development"
allow_origins = ["*"] if env_is_dev else list(dict.fromkeys(settings.BACKEND_CORS_ORIGINS or []))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=not env_is_dev,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ReceiptError, receipt_error_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

app.include_router(health_router)
app.include_router(receipts_router)
app.include_router(files_router)
app.include_router(usage_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": f"Welcome to the {settings.PROJECT_NAME} receipt processing API"}


@app.get("/debug/db")
async def db_debug():
    """Return non-sensitive DB diagnostics (development only)."""
    if not env_is_dev:
        return {"ok": False, "message": "disabled in non-development env"}
    return get_db_debug_info()
