"""
M-Pesa STK Callback Handler.
Verifies the shared callback token and hands the payload to reconciliation.
"""

import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from app.api.deps import get_callback_handler
from app.config import settings
from app.services.callback_service import Acknowledgement, CallbackReconciliationHandler

router = APIRouter()
logger = logging.getLogger(__name__)


def verify_callback_token(token: Optional[str]) -> bool:
    """
    Compare the token carried on the callback URL with the configured one.
    """
    if not settings.mpesa_callback_token:
        logger.debug("M-Pesa callback token not configured")
        return True  # Skip verification in development

    return hmac.compare_digest(settings.mpesa_callback_token, token or "")


@router.post("/mpesa/callback")
async def mpesa_callback(
    request: Request,
    token: Optional[str] = Query(None),
    handler: CallbackReconciliationHandler = Depends(get_callback_handler),
):
    """
    Receive the asynchronous result of an STK push.

    Structurally valid callbacks are always acknowledged with ResultCode 0,
    including duplicates and unknown correlation ids.
    """
    if not verify_callback_token(token):
        logger.error("Invalid M-Pesa callback token")
        return JSONResponse(
            status_code=401,
            content={"ResultCode": 1, "ResultDesc": "Invalid token"},
        )

    body = await request.body()
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        ack = Acknowledgement(accepted=False, result_description="Callback body is not JSON")
        return JSONResponse(status_code=400, content=ack.to_response())

    ack = await handler.handle_callback(payload)
    return JSONResponse(
        status_code=200 if ack.accepted else 400,
        content=ack.to_response(),
    )
