"""
Imagenius - FastAPI Backend
Main application entry point with credit billing, webhooks and generation routing.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from config import is_production, settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    billing,
    webhooks,
    generation,
)
from services.error_sanitizer import sanitize_error_message
from services.errors import ImageniusError, RateLimitExceeded, UpstreamError
from services.quota import MemoryQuotaStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Imagenius API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if not settings.STRIPE_WEBHOOK_SECRET:
        print("⚠️ STRIPE_WEBHOOK_SECRET is empty; every webhook will be rejected.")
    print(f"🚦 Quota backend: {settings.QUOTA_BACKEND}")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Imagenius API",
    description="Credit billing, rate limiting and image generation",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.memory_quota_store = MemoryQuotaStore()

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ImageniusError)
async def imagenius_error_handler(request: Request, exc: ImageniusError):
    if isinstance(exc, UpstreamError):
        logger.error("Upstream failure on %s %s: %s (%s)", request.method, request.url.path, exc.message, exc.detail)
    content = {"error": exc.message}
    headers = None
    if isinstance(exc, RateLimitExceeded):
        content["retryAfter"] = exc.retry_after
        headers = {"Retry-After": str(exc.retry_after)}
    if not is_production() and exc.detail:
        content["details"] = sanitize_error_message(exc.detail, production=False)
        content["type"] = type(exc).__name__
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    content = {"error": "Invalid request data"}
    if not is_production():
        content["details"] = [
            {"field": ".".join(str(part) for part in error.get("loc", ())), "message": error.get("msg", "")}
            for error in exc.errors()
        ]
        content["type"] = "ValidationError"
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"error": sanitize_error_message(exc, production=is_production())}
    return JSONResponse(status_code=500, content=content)


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(generation.router, prefix="/generate", tags=["Generation"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Imagenius API",
        "version": "0.1.0",
        "status": "running"
    }
