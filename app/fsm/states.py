"""
Payment state machine and payment purpose definitions.
"""

from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, Optional


class PaymentState(str, Enum):
    """
    Lifecycle of a payment transaction.

    created -> pushed -> settled | failed | expired
    created -> failed (provider rejected / unreachable)
    """

    CREATED = "created"
    PUSHED = "pushed"
    SETTLED = "settled"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[PaymentState] = frozenset(
    {PaymentState.SETTLED, PaymentState.FAILED, PaymentState.EXPIRED}
)

# Every transition the ledger may perform. Terminal states have no exits.
ALLOWED_TRANSITIONS: Dict[PaymentState, FrozenSet[PaymentState]] = {
    PaymentState.CREATED: frozenset({PaymentState.PUSHED, PaymentState.FAILED}),
    PaymentState.PUSHED: frozenset(
        {PaymentState.SETTLED, PaymentState.FAILED, PaymentState.EXPIRED}
    ),
    PaymentState.SETTLED: frozenset(),
    PaymentState.FAILED: frozenset(),
    PaymentState.EXPIRED: frozenset(),
}


def can_transition(current: PaymentState, target: PaymentState) -> bool:
    """Check a transition against the state table."""
    return target in ALLOWED_TRANSITIONS[current]


class PremiumTier(str, Enum):
    """Premium seller upgrade durations and their prices in KES."""

    ONE_MONTH = "1month"
    THREE_MONTHS = "3months"
    TWELVE_MONTHS = "12months"

    @property
    def amount_kes(self) -> int:
        amounts = {
            self.ONE_MONTH: 2000,
            self.THREE_MONTHS: 5000,
            self.TWELVE_MONTHS: 15000,
        }
        return amounts[self]

    @classmethod
    def for_amount(cls, amount: Decimal) -> Optional["PremiumTier"]:
        for tier in cls:
            if Decimal(tier.amount_kes) == amount:
                return tier
        return None


class PaymentPurpose(str, Enum):
    """
    What a payment is for.
    Each purpose carries its own pricing rule and provider references.
    """

    DEPOSIT = "deposit"
    PREMIUM_UPGRADE = "premium-upgrade"
    PURCHASE_PAYMENT = "purchase-payment"

    @property
    def has_fixed_prices(self) -> bool:
        """Premium upgrades must match a tier price; the rest are open amounts."""
        return self == PaymentPurpose.PREMIUM_UPGRADE

    @property
    def account_prefix(self) -> str:
        """Prefix of the AccountReference shown on the payer's phone."""
        prefixes = {
            self.DEPOSIT: "DEP",
            self.PREMIUM_UPGRADE: "PRM",
            self.PURCHASE_PAYMENT: "PAY",
        }
        return prefixes[self]

    @property
    def description(self) -> str:
        """TransactionDesc sent to the provider (max 13 chars)."""
        descriptions = {
            self.DEPOSIT: "Car deposit",
            self.PREMIUM_UPGRADE: "Premium",
            self.PURCHASE_PAYMENT: "Car payment",
        }
        return descriptions[self]


class ResultCode(int, Enum):
    """STK callback result codes worth naming. Anything non-zero is a failure."""

    SUCCESS = 0
    INSUFFICIENT_FUNDS = 1
    CANCELLED_BY_USER = 1032
    TIMEOUT = 1037
    WRONG_PIN = 2001


class FailureReason(str, Enum):
    """Ledger failure reasons produced by this service (provider text is stored as-is)."""

    AMOUNT_MISMATCH = "amount-mismatch"
    MISSING_RECEIPT = "missing-receipt"
