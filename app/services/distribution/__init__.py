"""
Batched reward distribution.
"""

from .transport import (
    PaymentResult, PaymentTransport, TokenTransferTransport,
    SimulatedPaymentTransport, DeduplicatingTransport, create_payment_transport
)
from .executor import DistributionExecutor, make_idempotency_key, progress_to_dict

__all__ = [
    "PaymentResult",
    "PaymentTransport",
    "TokenTransferTransport",
    "SimulatedPaymentTransport",
    "DeduplicatingTransport",
    "create_payment_transport",
    "DistributionExecutor",
    "make_idempotency_key",
    "progress_to_dict",
]
