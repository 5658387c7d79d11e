"""
Callback Reconciliation Handler - the trust boundary for M-Pesa STK callbacks.

Sample callback:

    {"Body": {"stkCallback": {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": "ws_CO_191220191020363925",
        "ResultCode": 0,
        "ResultDesc": "The service request is processed successfully.",
        "CallbackMetadata": {"Item": [
            {"Name": "Amount", "Value": 1.00},
            {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
            {"Name": "TransactionDate", "Value": 20191219102115},
            {"Name": "PhoneNumber", "Value": 254708374149}]}}}}

The provider always gets an "Accepted" acknowledgement for a structurally
valid callback, whatever the ledger makes of it.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from app.errors import AmountMismatch, InvalidTransition, MalformedCallback, UnknownCorrelation
from app.fsm.states import PaymentState, ResultCode
from app.services.ledger_service import TransactionLedger, TransitionResult
from app.services.settlement_events import SettlementEvent, SettlementNotifier

logger = logging.getLogger(__name__)


class CallbackItem(BaseModel):
    Name: Optional[str] = None
    Value: Optional[Any] = None


class StkCallbackMetadata(BaseModel):
    Item: List[CallbackItem] = Field(default_factory=list)


class StkCallback(BaseModel):
    MerchantRequestID: Optional[str] = None
    CheckoutRequestID: str = Field(min_length=1)
    ResultCode: int
    ResultDesc: Optional[str] = None
    CallbackMetadata: Optional[StkCallbackMetadata] = None


class StkCallbackBody(BaseModel):
    stkCallback: StkCallback


class StkCallbackEnvelope(BaseModel):
    Body: StkCallbackBody


@dataclass
class CallbackResult:
    """Named, optional view of a parsed callback."""

    correlation_id: str
    result_code: int
    result_description: Optional[str] = None
    merchant_request_id: Optional[str] = None
    receipt_id: Optional[str] = None
    confirmed_amount: Optional[Decimal] = None
    payer_reference: Optional[str] = None
    transaction_date: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.result_code == ResultCode.SUCCESS


@dataclass
class Acknowledgement:
    accepted: bool
    result_description: str = "Accepted"

    def to_response(self) -> Dict[str, Any]:
        return {
            "ResultCode": 0 if self.accepted else 1,
            "ResultDesc": self.result_description,
        }


def _metadata_values(metadata: Optional[StkCallbackMetadata]) -> Dict[str, Any]:
    """Named values from the metadata list; nameless and valueless items are dropped."""
    values: Dict[str, Any] = {}
    if metadata is None:
        return values
    for item in metadata.Item:
        if item.Name and item.Value is not None and item.Value != "":
            values.setdefault(item.Name, item.Value)
    return values


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_callback(raw: Any) -> CallbackResult:
    """Validate the envelope and pull out the fields reconciliation needs."""
    if not isinstance(raw, dict):
        raise MalformedCallback("Callback payload must be a JSON object")

    try:
        envelope = StkCallbackEnvelope.model_validate(raw)
    except ValidationError as e:
        raise MalformedCallback(f"Invalid STK callback: {e.error_count()} validation errors") from e

    callback = envelope.Body.stkCallback
    values = _metadata_values(callback.CallbackMetadata)

    return CallbackResult(
        correlation_id=callback.CheckoutRequestID,
        result_code=callback.ResultCode,
        result_description=callback.ResultDesc,
        merchant_request_id=callback.MerchantRequestID,
        receipt_id=_as_text(values.get("MpesaReceiptNumber")),
        confirmed_amount=_as_decimal(values.get("Amount")),
        payer_reference=_as_text(values.get("PhoneNumber")),
        transaction_date=_as_text(values.get("TransactionDate")),
    )


class CallbackReconciliationHandler:
    """Matches provider callbacks to ledger entries and emits settlement events."""

    def __init__(
        self,
        ledger: TransactionLedger,
        notifier: SettlementNotifier,
        strict: bool = False,
    ):
        self.ledger = ledger
        self.notifier = notifier
        # Re-raise invariant violations instead of logging them (development)
        self.strict = strict

    async def handle_callback(self, raw: Any) -> Acknowledgement:
        try:
            result = parse_callback(raw)
        except MalformedCallback as e:
            logger.warning(f"Rejected malformed M-Pesa callback: {e.message}")
            return Acknowledgement(accepted=False, result_description=e.message)

        log_extra = {"correlation_id": result.correlation_id}

        try:
            if result.is_success:
                outcome = await self.ledger.settle(
                    result.correlation_id,
                    result.receipt_id,
                    result.confirmed_amount,
                )
            else:
                outcome = await self.ledger.fail(
                    result.correlation_id,
                    result.result_description or f"result-code-{result.result_code}",
                )
        except UnknownCorrelation:
            logger.warning(
                f"Security signal: M-Pesa callback for unknown correlation "
                f"{result.correlation_id} (result {result.result_code})",
                extra=log_extra,
            )
            return Acknowledgement(accepted=True)
        except InvalidTransition as e:
            logger.error(f"Ledger invariant violated for {result.correlation_id}: {e.message}", extra=log_extra)
            if self.strict:
                raise
            return Acknowledgement(accepted=True)

        await self._after_transition(result, outcome)
        return Acknowledgement(accepted=True)

    async def _after_transition(self, result: CallbackResult, outcome: TransitionResult) -> None:
        txn = outcome.transaction
        log_extra = {"correlation_id": result.correlation_id, "transaction_id": str(txn.id)}

        if not outcome.applied:
            logger.info(
                f"Duplicate or late callback for payment {txn.id} ignored; state stays {txn.state}",
                extra=log_extra,
            )
            return

        if outcome.amount_mismatch:
            mismatch = AmountMismatch(
                f"Payment {txn.id} requested {txn.amount} but callback confirmed "
                f"{result.confirmed_amount} (receipt {result.receipt_id}, payer {result.payer_reference})"
            )
            logger.warning(f"Fraud signal: {mismatch.message}; queued for manual review", extra=log_extra)
            return

        if outcome.state != PaymentState.SETTLED:
            logger.info(f"Payment {txn.id} moved to {txn.state}: {txn.failure_reason}", extra=log_extra)
            return

        try:
            await self.notifier.publish(SettlementEvent.from_transaction(txn))
        except Exception as e:
            # The ledger already says settled; pollers still see it
            logger.error(f"Failed to publish settlement event for {txn.id}: {e}", exc_info=True, extra=log_extra)
