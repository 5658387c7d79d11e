"""Models package for database models."""

from app.models.payment import PaymentTransaction
from app.models.payment_review import PaymentReview

__all__ = [
    "PaymentTransaction",
    "PaymentReview",
]
