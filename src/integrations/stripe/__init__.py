"""
Stripe Integration Module
=========================

Central export point for the payment collaborator.

Usage::

    from src.integrations.stripe import (
        PaymentError,
        create_payment_intent,
        create_transfer,
    )

``webhookHandler`` is imported directly; it depends on the job services.
"""

from .paymentService import (
    PaymentError,
    PaymentIntentResult,
    create_payment_intent,
)
from .payoutService import (
    TransferResult,
    create_transfer,
)

__all__ = [
    # Payment Service
    "PaymentError",
    "PaymentIntentResult",
    "create_payment_intent",
    # Payout Service
    "TransferResult",
    "create_transfer",
]
