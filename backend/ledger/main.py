"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ledger.core.errors import LedgerError
from ledger.core.logging import setup_logging
from ledger.core.middleware import (
    global_exception_handler, ledger_error_handler, security_middleware, setup_cors_middleware
)
from ledger.core.otel import initialize_otel, instrument_app
from ledger.db.redis import get_redis_client
from ledger.db.session import engine, init_db

from ledger.api import admin, entitlements, payouts, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    if not initialize_otel():
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    logger.info("Starting scheduler tasks...")
    from ledger.tasks.scheduler import start_background_tasks
    tasks = start_background_tasks()
    logger.info("Scheduler tasks started")

    yield

    logger.info("Shutting down...")
    for task in tasks:
        task.cancel()


app = FastAPI(
    title="Revenue Ledger",
    description="Subscription revenue ledger, author payouts and reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

instrument_app(app, engine)
setup_cors_middleware(app)
app.middleware("http")(security_middleware)
app.add_exception_handler(LedgerError, ledger_error_handler)
app.add_exception_handler(Exception, global_exception_handler)

app.include_router(webhooks.router)
app.include_router(payouts.router)
app.include_router(entitlements.router)
app.include_router(admin.router)


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
