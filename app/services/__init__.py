"""Services package."""

from app.services.ledger_service import TransactionLedger, TransitionResult
from app.services.mpesa_client import MpesaClient, PushAcceptance
from app.services.initiation_service import PaymentInitiationService, InitiationResult
from app.services.callback_service import (
    CallbackReconciliationHandler,
    CallbackResult,
    Acknowledgement,
    parse_callback,
)
from app.services.settlement_events import (
    SettlementEvent,
    SettlementNotifier,
    LoggingSettlementNotifier,
    RedisSettlementNotifier,
)

__all__ = [
    "TransactionLedger",
    "TransitionResult",
    "MpesaClient",
    "PushAcceptance",
    "PaymentInitiationService",
    "InitiationResult",
    "CallbackReconciliationHandler",
    "CallbackResult",
    "Acknowledgement",
    "parse_callback",
    "SettlementEvent",
    "SettlementNotifier",
    "LoggingSettlementNotifier",
    "RedisSettlementNotifier",
]
