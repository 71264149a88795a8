"""
Foodshare Subscriptions API - Main Application
==============================================

FastAPI application: lifespan (database, optional Redis, job worker),
New Relic transaction attributes, exception handlers and routers.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import newrelic.agent

# Root logger defaults to WARNING; service logs are INFO
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.core.errors import setup_exception_handlers
from app.db.session import close_db, init_db
from app.schemas.common import ErrorResponse
from app.services.cache import close_redis, init_redis
from app.services.job_worker import SubscriptionJobWorker

logger = logging.getLogger(__name__)

APP_NAME = "Foodshare Subscriptions API"
APP_VERSION = "1.0.0"


# =============================================================================
# New Relic Transaction Attributes (Raw ASGI)
# =============================================================================

class TransactionAttributesMiddleware:
    """
    Tags each New Relic web transaction with route, status, duration and
    environment so webhook and cron traffic can be split in dashboards.

    Raw ASGI: ``BaseHTTPMiddleware`` runs the endpoint in another task and
    New Relic loses the DB and Redis spans.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        response_status = {"code": 500}

        async def capture_status(message):
            if message["type"] == "http.response.start":
                response_status["code"] = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, capture_status)
        finally:
            if newrelic.agent.current_transaction() is not None:
                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", _route_path(scope)),
                    ("http.status_code", response_status["code"]),
                    ("http.duration_ms", round((time.perf_counter() - started) * 1000, 2)),
                    ("environment", settings.ENVIRONMENT),
                ])


def _route_path(scope) -> str:
    """Route template (``/api/v1/subscriptions/{user_id}``) rather than the raw path."""
    route = scope.get("route")
    return getattr(route, "path", None) or scope.get("path", "unknown")


# =============================================================================
# Lifespan
# =============================================================================

_job_worker: Optional[SubscriptionJobWorker] = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup: database, optional Redis cache, subscription job worker.
    Shutdown in reverse order.

    A failed database or Redis connection is logged, not fatal, so
    ``/health`` keeps answering.
    """
    global _job_worker

    logger.info("Starting %s (%s)", APP_NAME, settings.ENVIRONMENT)

    if not settings.INTERNAL_API_KEY:
        logger.warning("INTERNAL_API_KEY is not set; service routes will reject every call")
    if not settings.CRON_SECRET:
        logger.warning("CRON_SECRET is not set; cron routes will reject every call")

    try:
        await init_db()
    except (SQLAlchemyError, OSError, ValueError) as e:
        logger.error("Database connection failed: %s", e)

    try:
        await init_redis()
    except (RedisError, OSError) as e:
        logger.error("Redis connection failed, continuing without cache: %s", e)
        await close_redis()

    if settings.SCHEDULER_ENABLED:
        _job_worker = SubscriptionJobWorker()
        await _job_worker.start()
    else:
        logger.info("In-process scheduler disabled; relying on the cron endpoint")

    yield

    logger.info("Shutting down %s", APP_NAME)
    if _job_worker is not None:
        await _job_worker.stop()
        _job_worker = None
    await close_redis()
    await close_db()


# =============================================================================
# Application
# =============================================================================

def _error(description: str) -> dict:
    return {"model": ErrorResponse, "description": description}


app = FastAPI(
    title=APP_NAME,
    description="""
## Subscription Lifecycle Manager

Idempotent ingestion of verified App Store, Google Play and Stripe
notifications, a validated subscription state machine, a retrying
dead-letter queue, daily reconciliation metrics and entitlement lookups.
    """,
    version=APP_VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        401: _error("Missing or invalid service credentials"),
        404: _error("Unknown route or dead-letter entry"),
        409: _error("Transaction linked to another user, or DLQ entry in the wrong state"),
        422: _error("Validation error"),
        500: _error("Internal server error"),
        503: _error("Event could not be recorded; redeliver"),
    },
)

app.add_middleware(TransactionAttributesMiddleware)
setup_exception_handlers(app)


@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """Liveness check. Pipeline health is served at ``/api/v1/cron/health``."""
    return {
        "status": "healthy",
        "version": APP_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from app.api.v1 import cron, subscription, webhooks
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
app.include_router(subscription.router, prefix="/api/v1/subscriptions", tags=["Subscriptions"])
app.include_router(cron.router, prefix="/api/v1/cron", tags=["Cron"])
