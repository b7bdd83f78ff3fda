"""
Main FastAPI Application for Marketplace Payments

This module provides the central FastAPI application:
- Edge function endpoints for checkout, Connect onboarding and marketplace charges
- Stripe webhook processing
- Health checks
- CORS configuration, rate limiting and request logging
"""

import logging
import time
from contextlib import asynccontextmanager
import stripe
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .. import __version__
from ..config import get_settings
from ..database.client import get_client
from ..payments.errors import PaymentError
from .payment_endpoints import payments_router, limiter

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

settings = get_settings()

SERVICE_NAME = "Marketplace Payments API"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager for startup and shutdown events.
    """
    logger.info(f"Starting {SERVICE_NAME}...")

    stripe.api_key = settings.stripe_secret_key
    stripe.api_version = settings.stripe_api_version

    if get_client(settings) is None:
        logger.warning("Supabase client not initialized")

    logger.info(f"{SERVICE_NAME} started successfully")

    yield

    logger.info(f"Shutting down {SERVICE_NAME}...")


# Create FastAPI application
app = FastAPI(
    title=SERVICE_NAME,
    description="""
    Stripe payment orchestration for a Supabase-backed marketplace:

    - **Payments**: one-off PaymentIntents with saved-card and express checkout
    - **Plans**: recurring subscriptions and one-time merchant access purchases
    - **Connect**: Express account onboarding for sellers
    - **Marketplace**: destination charges with a platform fee
    - **Webhooks**: signature-verified Stripe event processing
    """,
    version=__version__,
    lifespan=lifespan,
    debug=settings.debug,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "X-Client-Info",
        "Apikey",
        "Stripe-Signature",
    ],
)

# Add rate limiting middleware
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

app.include_router(payments_router)


# Exception handlers. Every error body is {"error": message}.

@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.status_code >= 500:
        logger.error(f"{request.url.path}: {exc.message}")
    else:
        logger.warning(f"{request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(stripe.CardError)
async def card_error_handler(request: Request, exc: stripe.CardError):
    logger.warning(f"Card declined on {request.url.path}: {exc.code} {exc.user_message}")
    return JSONResponse(status_code=402, content={"error": exc.user_message or str(exc)})


@app.exception_handler(stripe.StripeError)
async def stripe_error_handler(request: Request, exc: stripe.StripeError):
    logger.error(f"Stripe error on {request.url.path}: {exc}")
    return JSONResponse(status_code=400, content={"error": exc.user_message or str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid request: {field} {first.get('msg', '')}".strip()
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """General exception handler for unexpected errors."""
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Middleware for request logging and timing
@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Log requests and add timing information."""
    start_time = time.time()

    logger.info(f"Request: {request.method} {request.url}")

    response = await call_next(request)

    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)

    logger.info(f"Response: {response.status_code} - {process_time:.4f}s")

    return response


# Health check endpoints
@app.get("/health", tags=["health"])
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": __version__,
        "environment": settings.environment,
    }


@app.get("/health/detailed", tags=["health"])
async def detailed_health_check():
    """Detailed health check with service dependencies."""
    checks = {
        "supabase": "healthy" if get_client(settings) is not None else "unavailable",
        "stripe": "configured" if settings.stripe_secret_key else "missing: STRIPE_SECRET_KEY",
        "webhooks": "configured" if settings.stripe_webhook_secret else "missing: STRIPE_WEBHOOK_SECRET",
    }
    degraded = any(c.startswith("missing") or c == "unavailable" for c in checks.values())
    return {
        "status": "degraded" if degraded else "healthy",
        "service": SERVICE_NAME,
        "version": __version__,
        "environment": settings.environment,
        "checks": checks,
    }
