"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html

from app.core.config import settings
from app.core.database import async_session_maker, engine
from app.core.logging import log_error, log_info, setup_logging
from app.core.middleware import CorrelationIdMiddleware, RequestLoggingMiddleware
from app.modules.payment_gateway.dispatcher import CallbackDispatcher
from app.modules.payment_gateway.notifications import PaymentNotifier
from app.modules.payment_gateway.repository import ledger_factory
from app.modules.payment_gateway.router import router as payment_router
from app.modules.payment_gateway.service import PaymentGatewayFactory
from app.modules.payment_gateway.sweeper import configure_sweeper
from app.modules.scheduler import JobScheduler, scheduler_router

logger = logging.getLogger(__name__)

setup_logging(
    level=settings.LOG_LEVEL if not settings.DEBUG else "DEBUG",
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ledger_scope = ledger_factory(async_session_maker)
    gateways = PaymentGatewayFactory.create_configured(settings)
    notifier = PaymentNotifier()
    scheduler = JobScheduler()

    app.state.ledger_scope = ledger_scope
    app.state.gateways = gateways
    app.state.notifier = notifier
    app.state.dispatcher = CallbackDispatcher(gateways, ledger_scope, notifier)
    app.state.scheduler = scheduler

    try:
        await configure_sweeper(scheduler, settings, ledger_scope)
    except ValueError as e:
        log_error(logger, "Expiry sweep not scheduled", e, schedule=settings.SWEEP_SCHEDULE)

    log_info(
        logger,
        "Payment service started",
        gateways=sorted(gateways),
        jobs=sorted(scheduler.status()),
    )
    try:
        yield
    finally:
        await scheduler.stop_all()
        await notifier.drain()
        await engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Payment Reconciliation API

Checkout through Telebirr or Stripe, gateway callbacks, order status
and scheduled expiry of abandoned orders.

User endpoints expect the `X-User-ID` header from the authentication layer.
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    docs_url=None,
    redoc_url=None,
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "health",
            "description": "Health check endpoints",
        },
        {
            "name": "payments",
            "description": "Checkout, gateway callbacks, order status and history",
        },
        {
            "name": "jobs",
            "description": "Scheduled job status, manual runs and reload",
        },
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)


@app.get("/docs", include_in_schema=False)
async def custom_swagger_ui_html():
    """Swagger UI documentation."""
    return get_swagger_ui_html(
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        title=f"{settings.PROJECT_NAME} - Swagger UI",
        swagger_js_url="https://cdn.jsdelivr.net/npm/swagger-ui-dist@5/swagger-ui-bundle.js",
        swagger_css_url="https://cdn.jsdelivr.net/npm/swagger-ui-dist@5/swagger-ui.css",
    )


@app.get("/redoc", include_in_schema=False)
async def redoc_html():
    """ReDoc documentation."""
    return get_redoc_html(
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        title=f"{settings.PROJECT_NAME} - ReDoc",
        redoc_js_url="https://cdn.jsdelivr.net/npm/redoc@latest/bundles/redoc.standalone.js",
    )


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


app.include_router(payment_router, prefix=settings.API_V1_PREFIX)
app.include_router(scheduler_router, prefix=settings.API_V1_PREFIX)
