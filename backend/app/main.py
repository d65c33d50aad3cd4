"""
Escuela Segura - FastAPI Application

Main entry point for the backend API.
Provides access status, compliance evaluation and subscription billing.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import settings
from app.infrastructure.exceptions import (
    AccessDeniedError,
    EscuelaSeguraError,
    NotFoundError,
    PaymentProcessorError,
    SubscriptionStateError,
    ValidationError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info(
        f"Escuela Segura Backend starting in {settings.environment} mode "
        f"(payment provider: {settings.payment_provider})..."
    )

    try:
        from app.infrastructure.db.database import init_db
        await init_db()
        logger.info("Database connection pool initialized")
    except Exception as e:
        logger.warning(f"Database initialization skipped: {e}")

    yield

    try:
        from app.infrastructure.db.database import close_db
        await close_db()
        logger.info("Database connection pool closed")
    except Exception as e:
        logger.warning(f"Database shutdown error: {e}")

    logger.info("Escuela Segura Backend shutting down...")


app = FastAPI(
    title="Escuela Segura",
    description="Compliance tracking and subscription billing for schools",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle validation errors (including missing processor references)."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(SubscriptionStateError)
async def subscription_state_error_handler(request: Request, exc: SubscriptionStateError):
    """Transition not allowed now, or another one is in flight."""
    return JSONResponse(
        status_code=409,
        content=exc.to_dict(),
    )


@app.exception_handler(PaymentProcessorError)
async def payment_processor_error_handler(request: Request, exc: PaymentProcessorError):
    """Processor rejections carry the processor's user-facing message."""
    logger.warning(f"Payment processor error on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=402,
        content=exc.to_dict(),
    )


@app.exception_handler(AccessDeniedError)
async def access_denied_error_handler(request: Request, exc: AccessDeniedError):
    """Trial over and no subscription."""
    return JSONResponse(
        status_code=402,
        content=exc.to_dict(),
    )


@app.exception_handler(EscuelaSeguraError)
async def general_error_handler(request: Request, exc: EscuelaSeguraError):
    """Handle all other application errors."""
    logger.error(f"Unhandled application error on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "escuela-segura"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Escuela Segura API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from app.api.routes import access, compliance, subscriptions

app.include_router(access.router, prefix="/api", tags=["Access"])
app.include_router(compliance.router, prefix="/api", tags=["Compliance"])
app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
