"""
BRy Envelope Service - Main FastAPI Application
Keeps local signing records in line with BRy envelopes, stamps simple
signatures and assembles evidence packages.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from app.config import get_settings, get_cors_origins, CORS_ORIGIN_REGEX
from app.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler,
)
from app.routers import bry, documents, health, internal
from app.routers.health import VERSION
from app.utils.logging import setup_logging, RequestIdMiddleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    setup_logging(
        environment=settings.environment,
        level=logging.DEBUG if settings.debug else logging.INFO,
    )
    logger.info(
        f"Starting BRy Envelope Service v{VERSION} ({settings.environment}, "
        f"BRy {settings.bry_environment})"
    )
    yield
    logger.info("Shutting down BRy Envelope Service")


app = FastAPI(
    title="BRy Envelope Service",
    description="""Reconciliation of BRy e-signature envelopes and evidence assembly.

## Authentication

- `POST /v1/bry/webhook` is public; it only triggers a fresh read of BRy state.
- `X-Admin-Secret`: calls from the web app backend (sync, evidence, envelopes, simple signatures).
- `X-Internal-Secret`: Cloud Scheduler and operators (`/internal/v1/*`).
""",
    version=VERSION,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "bry", "description": "BRy webhook, sync and evidence"},
        {"name": "documents", "description": "Envelope creation and simple signatures"},
        {"name": "internal", "description": "Scheduler and operator endpoints"},
        {"name": "health", "description": "Health check endpoints"},
    ],
)

# Middleware
app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_origin_regex=CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(ValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(health.router)
app.include_router(bry.router)
app.include_router(documents.router)
app.include_router(internal.router)  # Scheduler / operators


# Run with uvicorn
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 8000)),
        reload=True,
    )
