"""
Payment endpoints consumed by the marketplace UI.
"""

import uuid
import asyncio
import logging
from decimal import Decimal
from typing import Set

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.api.deps import get_initiation_service, get_ledger, get_pending_initiations
from app.config import settings
from app.fsm.states import PaymentPurpose
from app.services.initiation_service import PaymentInitiationService
from app.services.ledger_service import TransactionLedger, transaction_view

router = APIRouter()
logger = logging.getLogger(__name__)


class InitiatePaymentRequest(BaseModel):
    """Request body for starting an M-Pesa push payment."""
    payerReference: str
    amount: Decimal
    purpose: PaymentPurpose
    subjectReference: str = Field(min_length=1, max_length=255)


def _log_detached_outcome(task: asyncio.Task) -> None:
    """Outcome of an initiation the caller stopped waiting for."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(f"Detached payment initiation failed: {exc}")
    else:
        result = task.result()
        logger.info(f"Detached payment initiation {result.transaction_id} pushed as {result.correlation_id}")


async def drain_pending_initiations(pending: Set[asyncio.Task], timeout: float) -> None:
    """
    Give detached initiations `timeout` seconds to finish, then cancel the rest.
    A cancelled initiation marks its record failed before it exits.
    """
    if not pending:
        return

    logger.info(f"Waiting for {len(pending)} detached payment initiations")
    _, still_running = await asyncio.wait(set(pending), timeout=timeout)
    for task in still_running:
        task.cancel()
    if still_running:
        logger.warning(f"Cancelled {len(still_running)} payment initiations at shutdown")
        await asyncio.gather(*still_running, return_exceptions=True)


@router.post("/mpesa/initiate", status_code=201)
async def initiate_payment(
    request: InitiatePaymentRequest,
    service: PaymentInitiationService = Depends(get_initiation_service),
    pending: Set[asyncio.Task] = Depends(get_pending_initiations),
):
    """
    Start an STK push.

    The wait is bounded, but a push already in flight is never cancelled:
    on timeout the initiation keeps running in the background, tracked
    until shutdown, and the caller polls the transaction later.
    """
    task = asyncio.ensure_future(
        service.initiate(
            payer_reference=request.payerReference,
            amount=request.amount,
            purpose=request.purpose,
            subject_reference=request.subjectReference,
        )
    )

    try:
        result = await asyncio.wait_for(
            asyncio.shield(task),
            timeout=settings.initiation_wait_seconds,
        )
    except asyncio.TimeoutError:
        pending.add(task)
        task.add_done_callback(pending.discard)
        task.add_done_callback(_log_detached_outcome)
        logger.warning(f"Payment initiation for {request.subjectReference} still running after timeout")
        return JSONResponse(
            status_code=504,
            content={
                "kind": "InitiationTimeout",
                "message": "Payment is still being started; check its status shortly",
            },
        )

    return {
        "transactionId": str(result.transaction_id),
        "correlationId": result.correlation_id,
        "customerMessage": result.customer_message,
    }


@router.get("/{transaction_id}")
async def get_payment(
    transaction_id: uuid.UUID,
    ledger: TransactionLedger = Depends(get_ledger),
):
    """Current state of a payment, for UI polling."""
    txn = await ledger.get_by_id(transaction_id)
    if txn is None:
        return JSONResponse(
            status_code=404,
            content={"kind": "NotFound", "message": f"Payment {transaction_id} not found"},
        )
    return transaction_view(txn)
