"""
Transaction Ledger - durable record of every payment attempt.

All state writes are conditional updates keyed on the current state
(compare-and-swap). Racing writers collapse to one effective transition;
the losers observe the winner's record and an ``applied=False`` result.
Each operation opens its own short session so no database transaction
ever spans a call to the provider.
"""

import uuid
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.errors import InvalidTransition, UnknownCorrelation
from app.fsm.states import FailureReason, PaymentPurpose, PaymentState, can_transition
from app.models.payment import PaymentTransaction, utcnow
from app.models.payment_review import PaymentReview

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 255


@dataclass
class TransitionResult:
    """Outcome of a ledger write."""

    transaction: PaymentTransaction
    # True only for the caller whose conditional update actually moved the record
    applied: bool
    amount_mismatch: bool = False

    @property
    def state(self) -> PaymentState:
        return self.transaction.payment_state


class TransactionLedger:
    """Authoritative store for PaymentTransaction records."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def create(
        self,
        payer_reference: str,
        amount: Decimal,
        purpose: PaymentPurpose,
        subject_reference: str,
        account_reference: Optional[str] = None,
        transaction_id: Optional[uuid.UUID] = None,
    ) -> PaymentTransaction:
        """Record a new payment attempt in `created` state."""
        now = utcnow()
        txn = PaymentTransaction(
            id=transaction_id or uuid.uuid4(),
            payer_reference=payer_reference,
            amount=amount,
            purpose=PaymentPurpose(purpose).value,
            subject_reference=subject_reference,
            account_reference=account_reference,
            state=PaymentState.CREATED.value,
            created_at=now,
            updated_at=now,
        )
        async with self._session_maker() as session:
            session.add(txn)
            await session.commit()

        logger.info(f"Payment {txn.id} created for {subject_reference} ({purpose})")
        return txn

    async def attach_correlation(
        self,
        transaction_id: uuid.UUID,
        correlation_id: str,
        merchant_request_id: Optional[str] = None,
    ) -> PaymentTransaction:
        """Move created -> pushed once the provider has accepted the push."""
        async with self._session_maker() as session:
            try:
                applied = await self._swap(
                    session,
                    transaction_id,
                    PaymentState.CREATED,
                    PaymentState.PUSHED,
                    correlation_id=correlation_id,
                    merchant_request_id=merchant_request_id,
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise InvalidTransition(
                    f"Correlation id {correlation_id} is already assigned"
                )

            txn = await self._reload(session, transaction_id)

        if not applied:
            state = txn.state if txn else "missing"
            raise InvalidTransition(
                f"Cannot attach correlation to payment {transaction_id} in state {state}"
            )

        logger.info(f"Payment {transaction_id} pushed, correlation {correlation_id}")
        return txn

    async def abandon(self, transaction_id: uuid.UUID, reason: str) -> TransitionResult:
        """Move created -> failed when the push never reached the payer."""
        async with self._session_maker() as session:
            applied = await self._swap(
                session,
                transaction_id,
                PaymentState.CREATED,
                PaymentState.FAILED,
                failure_reason=reason[:MAX_REASON_LENGTH],
            )
            await session.commit()
            txn = await self._reload(session, transaction_id)

        if txn is None:
            raise InvalidTransition(f"Payment {transaction_id} does not exist")
        if not applied:
            self._ensure_terminal(txn)
        else:
            logger.info(f"Payment {transaction_id} failed before push: {reason}")
        return TransitionResult(txn, applied)

    async def settle(
        self,
        correlation_id: str,
        provider_receipt_id: Optional[str],
        confirmed_amount: Optional[Decimal],
    ) -> TransitionResult:
        """
        Apply a successful provider callback.

        A confirmed amount that differs from the requested one fails the
        payment with `amount-mismatch` and queues it for manual review.
        """
        async with self._session_maker() as session:
            txn = await self._find_by_correlation(session, correlation_id)
            if txn is None:
                raise UnknownCorrelation(correlation_id)

            if txn.is_terminal:
                return TransitionResult(txn, applied=False)

            if confirmed_amount is None or Decimal(confirmed_amount) != txn.amount:
                applied = await self._swap(
                    session,
                    txn.id,
                    PaymentState.PUSHED,
                    PaymentState.FAILED,
                    failure_reason=FailureReason.AMOUNT_MISMATCH.value,
                )
                if applied:
                    session.add(
                        PaymentReview(
                            transaction_id=txn.id,
                            reason=FailureReason.AMOUNT_MISMATCH.value,
                            expected_amount=txn.amount,
                            confirmed_amount=confirmed_amount,
                            details={
                                "correlation_id": correlation_id,
                                "provider_receipt_id": provider_receipt_id,
                            },
                        )
                    )
                await session.commit()
                return await self._result(session, txn.id, applied, amount_mismatch=applied)

            if not provider_receipt_id:
                applied = await self._swap(
                    session,
                    txn.id,
                    PaymentState.PUSHED,
                    PaymentState.FAILED,
                    failure_reason=FailureReason.MISSING_RECEIPT.value,
                )
                await session.commit()
                return await self._result(session, txn.id, applied)

            applied = await self._swap(
                session,
                txn.id,
                PaymentState.PUSHED,
                PaymentState.SETTLED,
                provider_receipt_id=provider_receipt_id,
            )
            await session.commit()
            result = await self._result(session, txn.id, applied)

        if applied:
            logger.info(f"Payment {txn.id} settled, receipt {provider_receipt_id}")
        return result

    async def fail(self, correlation_id: str, reason: str) -> TransitionResult:
        """Apply a provider-reported failure."""
        async with self._session_maker() as session:
            txn = await self._find_by_correlation(session, correlation_id)
            if txn is None:
                raise UnknownCorrelation(correlation_id)

            if txn.is_terminal:
                return TransitionResult(txn, applied=False)

            applied = await self._swap(
                session,
                txn.id,
                PaymentState.PUSHED,
                PaymentState.FAILED,
                failure_reason=(reason or "provider-failure")[:MAX_REASON_LENGTH],
            )
            await session.commit()
            result = await self._result(session, txn.id, applied)

        if applied:
            logger.info(f"Payment {txn.id} failed: {reason}")
        return result

    async def expire_stale(self, older_than: datetime) -> List[uuid.UUID]:
        """
        Expire every pushed payment not updated since `older_than`.
        Uses the same conditional update as the callback path.
        """
        async with self._session_maker() as session:
            result = await session.execute(
                update(PaymentTransaction)
                .where(
                    PaymentTransaction.state == PaymentState.PUSHED.value,
                    PaymentTransaction.updated_at < older_than,
                )
                .values(state=PaymentState.EXPIRED.value, updated_at=utcnow())
                .returning(PaymentTransaction.id)
                .execution_options(synchronize_session=False)
            )
            expired = list(result.scalars().all())
            await session.commit()

        if expired:
            logger.info(f"Expired {len(expired)} stale payments")
        return expired

    async def get_by_id(self, transaction_id: uuid.UUID) -> Optional[PaymentTransaction]:
        async with self._session_maker() as session:
            return await session.get(PaymentTransaction, transaction_id)

    async def get_by_correlation(self, correlation_id: str) -> Optional[PaymentTransaction]:
        async with self._session_maker() as session:
            return await self._find_by_correlation(session, correlation_id)

    async def _find_by_correlation(
        self,
        session: AsyncSession,
        correlation_id: str,
    ) -> Optional[PaymentTransaction]:
        result = await session.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.correlation_id == correlation_id
            )
        )
        return result.scalar_one_or_none()

    async def _swap(
        self,
        session: AsyncSession,
        transaction_id: uuid.UUID,
        expected: PaymentState,
        target: PaymentState,
        **values: Any,
    ) -> bool:
        """Conditional update: move to `target` only if still in `expected`."""
        if not can_transition(expected, target):
            raise InvalidTransition(f"{expected.value} -> {target.value} is not allowed")

        result = await session.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction_id,
                PaymentTransaction.state == expected.value,
            )
            .values(state=target.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _reload(
        self,
        session: AsyncSession,
        transaction_id: uuid.UUID,
    ) -> Optional[PaymentTransaction]:
        return await session.get(
            PaymentTransaction,
            transaction_id,
            populate_existing=True,
        )

    async def _result(
        self,
        session: AsyncSession,
        transaction_id: uuid.UUID,
        applied: bool,
        amount_mismatch: bool = False,
    ) -> TransitionResult:
        txn = await self._reload(session, transaction_id)
        if not applied:
            # Lost the race: whoever won must have left a terminal record
            self._ensure_terminal(txn)
        return TransitionResult(txn, applied, amount_mismatch=amount_mismatch)

    @staticmethod
    def _ensure_terminal(txn: PaymentTransaction) -> None:
        if not txn.is_terminal:
            raise InvalidTransition(
                f"Payment {txn.id} is in non-terminal state {txn.state} after a lost update"
            )


def transaction_view(txn: PaymentTransaction) -> Dict[str, Any]:
    """Public, JSON-friendly view of a transaction for pollers."""
    return {
        "transactionId": str(txn.id),
        "correlationId": txn.correlation_id,
        "payerReference": txn.payer_reference,
        "amount": str(txn.amount),
        "purpose": txn.purpose,
        "subjectReference": txn.subject_reference,
        "state": txn.state,
        "providerReceiptId": txn.provider_receipt_id,
        "failureReason": txn.failure_reason,
        "createdAt": txn.created_at.isoformat() if txn.created_at else None,
        "updatedAt": txn.updated_at.isoformat() if txn.updated_at else None,
    }
