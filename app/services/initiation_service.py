"""
Payment Initiation Service - validate, record, push.
"""

import uuid
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from app.config import Settings
from app.errors import (
    InvalidAmount,
    InvalidPayerReference,
    InvalidTransition,
    ProviderError,
)
from app.fsm.states import PaymentPurpose, PremiumTier
from app.services.ledger_service import TransactionLedger
from app.services.mpesa_client import MpesaClient, format_phone_number, validate_phone_number

logger = logging.getLogger(__name__)


@dataclass
class InitiationResult:
    transaction_id: uuid.UUID
    correlation_id: str
    customer_message: Optional[str] = None


class PaymentInitiationService:
    """Orchestrates ledger create -> provider push -> attach correlation."""

    def __init__(self, ledger: TransactionLedger, client: MpesaClient, settings: Settings):
        self.ledger = ledger
        self.client = client
        self.settings = settings

    def normalize_payer_reference(self, payer_reference: str) -> str:
        """Format check only; no call to the provider."""
        if not payer_reference or not validate_phone_number(payer_reference):
            raise InvalidPayerReference(
                f"{payer_reference!r} is not a valid M-Pesa subscriber number"
            )
        return format_phone_number(payer_reference)

    def validate_amount(
        self,
        amount: Union[Decimal, int, float, str],
        purpose: PaymentPurpose,
    ) -> Decimal:
        """Apply the pricing rule of `purpose` and return the amount as Decimal."""
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise InvalidAmount(f"{amount!r} is not a number")

        if not value.is_finite() or value <= 0:
            raise InvalidAmount("Amount must be positive")

        # M-Pesa only moves whole shillings
        if value != value.to_integral_value():
            raise InvalidAmount("Amount must be a whole number of shillings")

        if value < self.settings.mpesa_min_amount or value > self.settings.mpesa_max_amount:
            raise InvalidAmount(
                f"Amount must be between {self.settings.mpesa_min_amount} "
                f"and {self.settings.mpesa_max_amount}"
            )

        if purpose.has_fixed_prices and PremiumTier.for_amount(value) is None:
            prices = ", ".join(str(tier.amount_kes) for tier in PremiumTier)
            raise InvalidAmount(f"Premium upgrade amount must be one of {prices}")

        return value.quantize(Decimal("0.01"))

    async def initiate(
        self,
        payer_reference: str,
        amount: Union[Decimal, int, float, str],
        purpose: Union[PaymentPurpose, str],
        subject_reference: str,
    ) -> InitiationResult:
        """
        Start a push payment.

        Provider failures and cancellation during the push mark the record
        failed and are re-raised, so no record is left in `created`.
        """
        try:
            purpose = PaymentPurpose(purpose)
        except ValueError:
            raise InvalidAmount(f"Unknown payment purpose {purpose!r}")

        phone = self.normalize_payer_reference(payer_reference)
        value = self.validate_amount(amount, purpose)

        txn_id = uuid.uuid4()
        account_reference = f"{purpose.account_prefix}{txn_id.hex[:8].upper()}"

        txn = await self.ledger.create(
            payer_reference=phone,
            amount=value,
            purpose=purpose,
            subject_reference=subject_reference,
            account_reference=account_reference,
            transaction_id=txn_id,
        )

        try:
            acceptance = await self.client.push_payment_request(
                payer_reference=phone,
                amount=value,
                reference=account_reference,
                description=purpose.description,
            )
        except asyncio.CancelledError:
            logger.warning(f"Payment {txn.id} initiation cancelled during push")
            await asyncio.shield(self.ledger.abandon(txn.id, "initiation-interrupted"))
            raise
        except ProviderError as e:
            logger.warning(f"Payment {txn.id} could not be pushed: {e.kind} {e.message}")
            await self.ledger.abandon(txn.id, f"{e.kind}: {e.message}")
            raise
        except Exception as e:
            logger.error(f"Payment {txn.id} push failed unexpectedly: {e}", exc_info=True)
            await self.ledger.abandon(txn.id, "unexpected-error")
            raise

        try:
            # The push is out; finish recording it even if the caller goes away
            await asyncio.shield(
                self.ledger.attach_correlation(
                    txn.id,
                    acceptance.correlation_id,
                    merchant_request_id=acceptance.merchant_request_id,
                )
            )
        except InvalidTransition:
            # Provider reused a correlation id we already track
            await self.ledger.abandon(txn.id, "duplicate-correlation")
            raise

        return InitiationResult(
            transaction_id=txn.id,
            correlation_id=acceptance.correlation_id,
            customer_message=acceptance.customer_message,
        )
