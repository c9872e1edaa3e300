"""Payment gateway adapter."""

from .base import (
    ChargeOptions,
    ChargeResult,
    ConnectedAccountInfo,
    PaymentGateway,
    RefundResult,
    TransferResult,
    derive_account_status,
    to_payment_status,
)
from .stripe_gateway import StripeGateway

__all__ = [
    # Interface
    "PaymentGateway",
    "ChargeOptions",
    # Results
    "ChargeResult",
    "TransferResult",
    "RefundResult",
    "ConnectedAccountInfo",
    "derive_account_status",
    "to_payment_status",
    # Implementations
    "StripeGateway",
]
