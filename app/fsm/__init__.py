"""FSM package for payment state management."""

from app.fsm.states import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    FailureReason,
    PaymentPurpose,
    PaymentState,
    PremiumTier,
    ResultCode,
    can_transition,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATES",
    "FailureReason",
    "PaymentPurpose",
    "PaymentState",
    "PremiumTier",
    "ResultCode",
    "can_transition",
]
