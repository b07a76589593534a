"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from reconciler.api import diagnostics, subscriptions
from reconciler.core.config import settings
from reconciler.core.logging import setup_logging
from reconciler.core.otel import initialize_otel, instrument_fastapi, instrument_sqlalchemy
from reconciler.services.persistence import PersistenceAdapter, SqlRecordStore, build_persistence_adapter
from reconciler.services.reconciliation_service import ReconciliationService
from reconciler.services.request_gate import RequestGate
from reconciler.services.status_cache import StatusCache
from reconciler.services.stripe_service import BillingClient, StripeBillingClient
from reconciler.services.webhook_service import WebhookIngestor

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the routes need, constructed once per process"""
    billing: BillingClient
    cache: StatusCache
    gate: RequestGate
    persistence: Optional[PersistenceAdapter]
    reconciliation: ReconciliationService
    webhook_ingestor: WebhookIngestor


def build_services(
    billing: Optional[BillingClient] = None,
    persistence: Optional[PersistenceAdapter] = None,
) -> Services:
    """Wire the service graph from settings.

    ``billing`` and ``persistence`` default to the Stripe client and the
    configured PERSISTENCE_BACKEND.
    """
    if billing is None:
        billing = StripeBillingClient.from_settings()
    if persistence is None:
        persistence = build_persistence_adapter()

    cache = StatusCache()
    gate = RequestGate()
    reconciliation = ReconciliationService(
        billing,
        cache,
        gate,
        persistence=persistence,
        metadata_key=settings.SUBSCRIPTION_METADATA_KEY,
        ordering_guard=settings.WEBHOOK_ORDERING_GUARD,
    )
    webhook_ingestor = WebhookIngestor(
        billing,
        reconciliation,
        metadata_key=settings.SUBSCRIPTION_METADATA_KEY,
    )
    return Services(
        billing=billing,
        cache=cache,
        gate=gate,
        persistence=persistence,
        reconciliation=reconciliation,
        webhook_ingestor=webhook_ingestor,
    )


def install_services(app: FastAPI, services: Services) -> None:
    app.state.billing = services.billing
    app.state.cache = services.cache
    app.state.gate = services.gate
    app.state.persistence = services.persistence
    app.state.reconciliation = services.reconciliation
    app.state.webhook_ingestor = services.webhook_ingestor


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    setup_logging()

    if initialize_otel():
        logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    if not settings.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY is not set, provider calls will fail")
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET is not set, every webhook will be rejected")

    # Services may be pre-installed (tests); build them otherwise
    if getattr(app.state, "reconciliation", None) is None:
        install_services(app, build_services())

    if isinstance(app.state.persistence, SqlRecordStore):
        instrument_sqlalchemy(app.state.persistence.engine)

    logger.info(f"Subscription reconciler started (persistence: {app.state.reconciliation.persistence_name})")

    yield

    # Shutdown
    logger.info("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="Subscription Reconciler",
    description="Keeps subscription entitlements in sync with Stripe",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI with OpenTelemetry
instrument_fastapi(app)

# CORS middleware
allowed_origins = [settings.FRONTEND_URL]
if settings.ENVIRONMENT == "development":
    allowed_origins.extend([
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(subscriptions.router)
if settings.diagnostic_routes_enabled:
    app.include_router(diagnostics.router)
else:
    logger.info("Diagnostic routes disabled")


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check(request: Request):
    """Health check endpoint"""
    return {
        "status": "healthy",
        "cached_users": len(request.app.state.cache),
        "gated_users": len(request.app.state.gate),
        "persistence": request.app.state.reconciliation.persistence_name,
    }
