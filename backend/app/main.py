"""Fixer Payments API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import get_settings
from .errors import MarketplaceError
from .logging_config import configure_logging, get_logger
from .rate_limit import limiter
from .routes import (
    applications_router,
    connect_router,
    earnings_router,
    jobs_router,
    payments_router,
    tasks_router,
    webhooks_router,
)
from .services import build_services

API_PREFIX = "/api/v1"

logger = get_logger("fixer.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting Fixer Payments API (debug=%s, storage=%s)", settings.debug, settings.storage_backend)
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)
    yield
    logger.info("Shutting down Fixer Payments API")


app = FastAPI(
    title="Fixer Payments API",
    description="Job payments, worker payouts and processor reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(jobs_router, prefix=API_PREFIX)
app.include_router(tasks_router, prefix=API_PREFIX)
app.include_router(applications_router, prefix=API_PREFIX)
app.include_router(payments_router, prefix=API_PREFIX)
app.include_router(earnings_router, prefix=API_PREFIX)
app.include_router(connect_router, prefix=API_PREFIX)
app.include_router(webhooks_router, prefix=API_PREFIX)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "fixer-payments",
        "version": "0.1.0",
        "status": "ok",
    }


@app.get("/health")
async def health(request: Request):
    """Detailed health check that touches the ledger."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        return {"status": "starting", "ledger": "unavailable"}

    ledger_status = "connected"
    try:
        await services.ledger.list_jobs(limit=1)
    except Exception as e:
        ledger_status = f"error: {str(e)[:50]}"

    return {
        "status": "healthy" if ledger_status == "connected" else "degraded",
        "ledger": ledger_status,
    }
