"""FastAPI application setup and configuration."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from boxoffice import __version__
from boxoffice.api import api_router
from boxoffice.config import get_settings
from boxoffice.database import close_database, init_database
from boxoffice.middleware import ErrorHandlerMiddleware, LoggingMiddleware
from boxoffice.utils.logging_config import setup_logging

settings = get_settings()

# Set up logging
setup_logging(
    log_level="DEBUG" if settings.debug else settings.log_level,
    log_file="logs/boxoffice.log" if settings.environment == "production" else None,
    enable_json_logging=settings.enable_json_logging or settings.environment == "production",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    # Startup
    logger.info("Starting Boxoffice booking engine")
    await init_database()
    yield
    # Shutdown
    logger.info("Shutting down Boxoffice booking engine")
    await close_database()


app = FastAPI(
    title="Boxoffice API",
    description="""
    ## Boxoffice

    Booking and ticket-inventory engine. Tickets are reserved with a single
    conditional update per booking, so an event is never oversold no matter
    how many requests arrive at once.

    ### Booking lifecycle

    * `POST /api/v1/bookings` reserves tickets and returns a PENDING booking
    * `POST /api/v1/bookings/{id}/confirm` confirms it after payment
    * `POST /api/v1/bookings/{id}/cancel` cancels it under the refund policy

    Pending bookings that are not confirmed within the hold window are
    cancelled by the reconciliation jobs and their tickets released.

    ### Error Handling

    ```json
    {
      "error": {
        "error_code": "ERROR_CODE",
        "message": "Human readable error message",
        "details": {},
        "suggestions": []
      },
      "error_id": "...",
      "timestamp": "..."
    }
    ```
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "bookings", "description": "Ticket reservation, confirmation and cancellation"},
        {"name": "tickets", "description": "Ticket verification at the door"},
        {"name": "stats", "description": "Booking and inventory statistics"},
        {"name": "admin", "description": "Reconciliation job control"},
        {"name": "health", "description": "System health endpoints"},
    ],
    lifespan=lifespan,
)

# 1. Logging middleware (first to capture all requests)
app.add_middleware(
    LoggingMiddleware,
    log_requests=settings.enable_request_logging,
    log_responses=settings.enable_request_logging,
)

# 2. Error handling middleware (catch all errors)
app.add_middleware(ErrorHandlerMiddleware, debug=settings.debug)

# 3. CORS middleware
if settings.debug:
    cors_origins = ["*"]
    cors_allow_credentials = False  # Cannot use credentials with wildcard origins
else:
    cors_origins = settings.cors_origins
    cors_allow_credentials = settings.cors_allow_credentials

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
    expose_headers=settings.cors_expose_headers,
)

# Include API routes
app.include_router(api_router)


@app.get("/", tags=["health"])
async def root():
    return {
        "message": "Boxoffice API",
        "version": __version__,
        "docs_url": "/docs",
        "status": "operational",
    }


@app.get("/health", tags=["health"])
async def health_check():
    """Basic health check for uptime monitoring."""
    return {
        "status": "healthy",
        "service": "boxoffice",
        "background_jobs": settings.enable_background_jobs,
    }
