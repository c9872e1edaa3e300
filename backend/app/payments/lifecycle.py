"""Per-job payment lifecycle.

The lifecycle is derived from ledger state (job payment status, job status
and the worker's earning) rather than stored, so it can never drift from
the records it summarizes.
"""

from enum import Enum
from typing import Optional

from app.ledger.models import Earning, EarningStatus, Job, JobPaymentStatus, JobStatus


class PaymentLifecycle(str, Enum):
    unpaid = "unpaid"
    charging = "charging"
    paid = "paid"
    settling = "settling"
    payout_pending = "payout_pending"
    payout_complete = "payout_complete"
    failed = "failed"
    refunded = "refunded"


# Valid lifecycle transitions
VALID_TRANSITIONS = {
    PaymentLifecycle.unpaid: {PaymentLifecycle.charging, PaymentLifecycle.settling},
    PaymentLifecycle.charging: {PaymentLifecycle.paid, PaymentLifecycle.failed, PaymentLifecycle.refunded},
    PaymentLifecycle.paid: {PaymentLifecycle.settling, PaymentLifecycle.failed, PaymentLifecycle.refunded},
    PaymentLifecycle.settling: {PaymentLifecycle.payout_pending, PaymentLifecycle.payout_complete},
    PaymentLifecycle.payout_pending: {
        PaymentLifecycle.payout_complete,
        PaymentLifecycle.failed,
        PaymentLifecycle.refunded,
    },
    # Retry paths: a new charge, or a retried payout
    PaymentLifecycle.failed: {
        PaymentLifecycle.charging,
        PaymentLifecycle.payout_pending,
        PaymentLifecycle.payout_complete,
    },
}


def can_transition(from_state: PaymentLifecycle, to_state: PaymentLifecycle) -> bool:
    """Check if a lifecycle transition is valid."""
    return to_state in VALID_TRANSITIONS.get(from_state, set())


_PAYMENT_STATUS_STATES = {
    JobPaymentStatus.unpaid: PaymentLifecycle.unpaid,
    JobPaymentStatus.pending: PaymentLifecycle.charging,
    JobPaymentStatus.paid: PaymentLifecycle.paid,
    JobPaymentStatus.failed: PaymentLifecycle.failed,
    JobPaymentStatus.refunded: PaymentLifecycle.refunded,
    JobPaymentStatus.partial_refunded: PaymentLifecycle.refunded,
}

_EARNING_STATES = {
    EarningStatus.pending: PaymentLifecycle.payout_pending,
    EarningStatus.processing: PaymentLifecycle.payout_pending,
    EarningStatus.paid: PaymentLifecycle.payout_complete,
    EarningStatus.failed: PaymentLifecycle.failed,
    EarningStatus.cancelled: PaymentLifecycle.failed,
}


def derive_lifecycle(job: Job, earning: Optional[Earning] = None) -> PaymentLifecycle:
    """Compute where a job sits in the payment lifecycle."""
    if job.payment_status in (JobPaymentStatus.refunded, JobPaymentStatus.partial_refunded):
        return PaymentLifecycle.refunded
    if earning is not None:
        return _EARNING_STATES[earning.status]
    if job.status in (JobStatus.completed, JobStatus.paid):
        return PaymentLifecycle.settling
    return _PAYMENT_STATUS_STATES[job.payment_status]


def charge_lifecycle(job: Job) -> PaymentLifecycle:
    """State of the poster's charge alone, ignoring completion and payout."""
    return _PAYMENT_STATUS_STATES[job.payment_status]
