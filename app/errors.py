"""
Payment error taxonomy.

Every error carries a ``kind`` that the API layer returns verbatim in
``{kind, message}`` error bodies.
"""

from typing import Optional


class PaymentError(Exception):
    """Base class for all payment-core errors."""

    kind = "PaymentError"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


# Caller input errors

class InvalidPayerReference(PaymentError):
    kind = "InvalidPayerReference"
    status_code = 400


class InvalidAmount(PaymentError):
    kind = "InvalidAmount"
    status_code = 400


# Integration errors at initiation

class ProviderError(PaymentError):
    """Any failure talking to the payment provider."""

    kind = "ProviderError"
    status_code = 502

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class AuthError(ProviderError):
    kind = "AuthError"
    status_code = 502


class ProviderRejected(ProviderError):
    kind = "ProviderRejected"
    status_code = 502


class ProviderUnavailable(ProviderError):
    kind = "ProviderUnavailable"
    status_code = 503


# Callback-time integrity errors

class UnknownCorrelation(PaymentError):
    kind = "UnknownCorrelation"
    status_code = 404

    def __init__(self, correlation_id: Optional[str]):
        super().__init__(f"No transaction for correlation id {correlation_id!r}")
        self.correlation_id = correlation_id


class AmountMismatch(PaymentError):
    kind = "AmountMismatch"
    status_code = 409


class MalformedCallback(PaymentError):
    kind = "MalformedCallback"
    status_code = 400


# Invariant errors

class InvalidTransition(PaymentError):
    """A conditional transition found the record in an unexpected state."""

    kind = "InvalidTransition"
    status_code = 409
