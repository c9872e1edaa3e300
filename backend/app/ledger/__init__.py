"""Ledger of jobs, tasks, payments and earnings.

Models:
- Job, Task, JobApplication, Payment, Earning, PaymentAccount

Storage:
- LedgerStore: protocol every backend implements
- InMemoryLedgerStore: local development and tests
- SupabaseLedgerStore: production backend
"""

from .models import (
    AccountStatus,
    ApplicationStatus,
    Earning,
    EarningsSummary,
    EarningStatus,
    Job,
    JobApplication,
    JobPaymentStatus,
    JobStatus,
    Payment,
    PaymentAccount,
    PaymentKind,
    PaymentStatus,
    PaymentType,
    Task,
    can_transition_earning,
    can_transition_payment,
    compute_net,
    compute_total,
    from_cents,
    to_cents,
)
from .store import CONFLICT, NOT_FOUND, InMemoryLedgerStore, LedgerStore
from .supabase_store import SupabaseLedgerStore

__all__ = [
    # Enums
    "AccountStatus",
    "ApplicationStatus",
    "EarningStatus",
    "JobPaymentStatus",
    "JobStatus",
    "PaymentKind",
    "PaymentStatus",
    "PaymentType",
    # Models
    "Earning",
    "EarningsSummary",
    "Job",
    "JobApplication",
    "Payment",
    "PaymentAccount",
    "Task",
    # Money helpers
    "compute_net",
    "compute_total",
    "from_cents",
    "to_cents",
    "can_transition_earning",
    "can_transition_payment",
    # Storage
    "LedgerStore",
    "InMemoryLedgerStore",
    "SupabaseLedgerStore",
    "CONFLICT",
    "NOT_FOUND",
]
