"""
Request dependencies.

Services are built once in the application lifespan and stored on
``app.state``; routes pull them from there.
"""

import asyncio
from typing import Set

from fastapi import Request

from app.services.callback_service import CallbackReconciliationHandler
from app.services.initiation_service import PaymentInitiationService
from app.services.ledger_service import TransactionLedger


def get_ledger(request: Request) -> TransactionLedger:
    return request.app.state.ledger


def get_initiation_service(request: Request) -> PaymentInitiationService:
    return request.app.state.initiation_service


def get_callback_handler(request: Request) -> CallbackReconciliationHandler:
    return request.app.state.callback_handler


def get_pending_initiations(request: Request) -> Set[asyncio.Task]:
    return request.app.state.pending_initiations
