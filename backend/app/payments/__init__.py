"""Job payment lifecycle and orchestration.

Lifecycle:
- PaymentLifecycle, derived from ledger state
- VALID_TRANSITIONS / can_transition

Service:
- JobPaymentOrchestrator
"""

from .lifecycle import (
    VALID_TRANSITIONS,
    PaymentLifecycle,
    can_transition,
    charge_lifecycle,
    derive_lifecycle,
)
from .orchestrator import (
    AccountStatusView,
    CancellationResult,
    JobCreation,
    JobPaymentOrchestrator,
)

__all__ = [
    # Lifecycle
    "PaymentLifecycle",
    "VALID_TRANSITIONS",
    "can_transition",
    "charge_lifecycle",
    "derive_lifecycle",
    # Results
    "AccountStatusView",
    "CancellationResult",
    "JobCreation",
    # Service
    "JobPaymentOrchestrator",
]
