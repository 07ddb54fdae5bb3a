"""Main FastAPI application."""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from courtpay.api import jobs, refunds, tenants, webhooks
from courtpay.core.config import settings
from courtpay.core.database import init_db
from courtpay.services.scheduler import expiry_scheduler

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting Court Payments Reconciliation Service")
    logger.info(f"Debug mode: {settings.DEBUG}")
    logger.info(f"Payment provider: {settings.PAYMENT_PROVIDER} ({settings.MERCADOPAGO_ENVIRONMENT})")

    await init_db()

    if settings.EXPIRY_SWEEP_ENABLED:
        await expiry_scheduler.start()

    yield

    # Shutdown
    logger.info("Shutting down Court Payments Reconciliation Service")
    await expiry_scheduler.stop()


# Create FastAPI app
app = FastAPI(
    title="Court Payments Reconciliation Service",
    description="Reconcile payment provider notifications against court bookings",
    version="1.0.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhooks.router)
app.include_router(tenants.router)
app.include_router(refunds.router)
app.include_router(jobs.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "scheduler_running": expiry_scheduler.running,
    }
