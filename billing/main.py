"""
Billing Service - FastAPI Application

Main entry point for the subscription billing API.
Provides endpoints for subscriptions, the tier catalog and payment webhooks.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing.config.settings import settings
from billing.infrastructure.exceptions import (
    BillingError,
    DuplicateError,
    InvalidReferenceError,
    InvalidSignatureError,
    NoActiveSubscriptionError,
    NotFoundError,
    PaymentProviderError,
    ProviderUnavailableError,
    SubscriptionConflictError,
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
    logger.info(f"Billing service starting in {settings.environment} mode...")
    
    if settings.database_url:
        try:
            from billing.infrastructure.db.database import init_db
            await init_db()
            logger.info("Database connection pool initialized")
        except Exception as e:
            logger.warning(f"Database initialization skipped: {e}")
    
    yield
    
    if settings.database_url:
        try:
            from billing.infrastructure.db.database import close_db
            await close_db()
            logger.info("Database connection pool closed")
        except Exception as e:
            logger.warning(f"Database shutdown error: {e}")
    
    logger.info("Billing service shutting down...")


app = FastAPI(
    title="Billing Service",
    description="Subscription lifecycle and payment reconciliation",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

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

def _error_response(status_code: int, exc: BillingError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle validation errors, unknown tiers included."""
    return _error_response(400, exc)


@app.exception_handler(NoActiveSubscriptionError)
async def no_active_subscription_handler(request: Request, exc: NoActiveSubscriptionError):
    return _error_response(400, exc)


@app.exception_handler(InvalidSignatureError)
async def invalid_signature_handler(request: Request, exc: InvalidSignatureError):
    return _error_response(400, exc)


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return _error_response(404, exc)


@app.exception_handler(InvalidReferenceError)
async def invalid_reference_handler(request: Request, exc: InvalidReferenceError):
    return _error_response(404, exc)


@app.exception_handler(SubscriptionConflictError)
async def conflict_error_handler(request: Request, exc: SubscriptionConflictError):
    """Handle attempts to start a second active subscription."""
    return _error_response(409, exc)


@app.exception_handler(DuplicateError)
async def duplicate_error_handler(request: Request, exc: DuplicateError):
    return _error_response(409, exc)


@app.exception_handler(ProviderUnavailableError)
async def provider_unavailable_handler(request: Request, exc: ProviderUnavailableError):
    """Handle provider timeouts; the client may retry."""
    return JSONResponse(
        status_code=503,
        content=exc.to_dict(),
        headers={"Retry-After": "5"},
    )


@app.exception_handler(PaymentProviderError)
async def payment_provider_error_handler(request: Request, exc: PaymentProviderError):
    """Handle errors reported by the payment provider."""
    return _error_response(502, exc)


@app.exception_handler(BillingError)
async def general_error_handler(request: Request, exc: BillingError):
    """Handle all other application errors."""
    logger.error(f"Unhandled application error: {exc}")
    return _error_response(500, exc)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "billing"}


# ============================================================================
# Import and register routers
# ============================================================================

from billing.api.routes import payments, subscriptions, webhooks  # noqa: E402

app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
app.include_router(payments.router, prefix="/api", tags=["Payments"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
