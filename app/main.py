"""
FastAPI application entry point.
Configures routes, middleware, and lifecycle events.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import logging

from app.config import settings
from app.database import init_db, close_db, get_session_maker
from app.errors import PaymentError
from app.logging_config import configure_logging
from app.redis import RedisClient
from app.services.callback_service import CallbackReconciliationHandler
from app.services.initiation_service import PaymentInitiationService
from app.services.ledger_service import TransactionLedger
from app.services.mpesa_client import MpesaClient
from app.services.settlement_events import (
    LoggingSettlementNotifier,
    RedisSettlementNotifier,
    SettlementNotifier,
)

from app.api.payments import drain_pending_initiations, router as payments_router
from app.api.webhooks.mpesa import router as mpesa_router


def wire_services(
    app: FastAPI,
    session_maker: async_sessionmaker[AsyncSession],
    client: MpesaClient,
    notifier: SettlementNotifier,
) -> None:
    """Build the payment services and attach them to app.state."""
    ledger = TransactionLedger(session_maker)
    app.state.ledger = ledger
    app.state.mpesa_client = client
    app.state.pending_initiations = set()
    app.state.initiation_service = PaymentInitiationService(ledger, client, settings)
    app.state.callback_handler = CallbackReconciliationHandler(
        ledger,
        notifier,
        strict=settings.debug,
    )


def build_notifier() -> SettlementNotifier:
    if RedisClient.is_configured():
        return RedisSettlementNotifier(RedisClient.get_client(), settings.settlement_channel)
    logging.warning("REDIS_URL not set; settlement events only go to the logs")
    return LoggingSettlementNotifier()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifecycle manager."""
    # Startup
    configure_logging()
    logging.info(f"Starting up {settings.app_name}...")

    if settings.is_development:
        await init_db()

    client = MpesaClient(settings)
    wire_services(app, get_session_maker(), client, build_notifier())

    yield

    # Shutdown
    await drain_pending_initiations(app.state.pending_initiations, settings.initiation_wait_seconds)
    await client.aclose()
    await RedisClient.close()
    await close_db()
    logging.info("Shutting down...")


app = FastAPI(
    title="Car Marketplace Payments",
    description="M-Pesa STK push initiation and callback reconciliation",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    logging.info(f"Payment request failed: {exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Global Exception Handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logging.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"kind": "InternalError", "message": "Internal Server Error"},
    )


# CORS middleware
origins = [settings.callback_base_url]
if settings.is_development:
    origins.append("*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "env": settings.app_env,
    }


# Payment API for the marketplace UI
app.include_router(
    payments_router,
    prefix="/api/payments",
    tags=["payments"],
)

# Provider callbacks
app.include_router(
    mpesa_router,
    prefix="/webhooks",
    tags=["webhooks"],
)
