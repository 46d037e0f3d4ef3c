"""Redemption engine - FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from redemption_engine.api import monitoring, redemptions
from redemption_engine.core.config import settings
from redemption_engine.core.logging import setup_logging
from redemption_engine.core.otel import initialize_otel, instrument_app, setup_otel_logging
from redemption_engine.db.session import engine, init_db
from redemption_engine.services.settlement_client import DelegationServerClient

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        if not setup_otel_logging():
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    if getattr(app.state, "settlement_client", None) is None:
        app.state.settlement_client = DelegationServerClient()
    owns_client = isinstance(app.state.settlement_client, DelegationServerClient)

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        from redemption_engine.tasks.scheduler import redemption_scheduler_task
        scheduler = asyncio.create_task(redemption_scheduler_task(app.state.settlement_client))
        logger.info("Redemption scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if scheduler is not None:
        scheduler.cancel()
        try:
            await scheduler
        except asyncio.CancelledError:
            pass
    if owns_client:
        app.state.settlement_client.close()
        app.state.settlement_client = None


app = FastAPI(
    title="Redemption Engine",
    description="Recurring on-chain subscription redemption service",
    version="1.0.0",
    lifespan=lifespan
)

instrument_app(app, engine)

app.include_router(monitoring.router)
app.include_router(redemptions.router)
