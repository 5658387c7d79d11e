"""Payment transaction model - the ledger of every M-Pesa push attempt."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, DateTime, Numeric, Uuid, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.fsm.states import PaymentPurpose, PaymentState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentTransaction(Base):
    """
    One STK push attempt and its lifecycle.
    correlation_id is the provider's CheckoutRequestID; unique once assigned.
    """

    __tablename__ = "payment_transactions"
    __table_args__ = (
        Index("ix_payment_transactions_state_updated_at", "state", "updated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # Provider CheckoutRequestID, null until the push is accepted
    correlation_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        unique=True,
        nullable=True,
    )

    # Provider MerchantRequestID
    merchant_request_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )

    # Normalised subscriber number the prompt was pushed to
    payer_reference: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        default="KES",
        nullable=False,
    )

    purpose: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
    )

    # Opaque pointer to the business object, e.g. "car:42"
    subject_reference: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )

    # AccountReference shown on the payer's phone
    account_reference: Mapped[Optional[str]] = mapped_column(
        String(12),
        nullable=True,
    )

    state: Mapped[str] = mapped_column(
        String(20),
        default=PaymentState.CREATED.value,
        nullable=False,
    )

    # M-Pesa receipt number, present iff settled
    provider_receipt_id: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )

    failure_reason: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    @property
    def payment_state(self) -> PaymentState:
        return PaymentState(self.state)

    @property
    def payment_purpose(self) -> PaymentPurpose:
        return PaymentPurpose(self.purpose)

    @property
    def is_terminal(self) -> bool:
        return self.payment_state.is_terminal

    def __repr__(self) -> str:
        return f"<PaymentTransaction {self.id} {self.state}>"
