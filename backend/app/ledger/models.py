"""Ledger records for jobs, tasks, applications, payments and earnings.

All monetary values use Decimal, never float. Payment and Earning rows are
append/status-mutate only; they form the audit trail for money movement.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

CENTS = Decimal("0.01")


# =============================================================================
# Enums
# =============================================================================


class PaymentType(str, Enum):
    """How a job is priced."""

    fixed = "fixed"
    hourly = "hourly"


class JobStatus(str, Enum):
    """Work lifecycle of a job."""

    open = "open"
    assigned = "assigned"
    in_progress = "in_progress"
    completed = "completed"
    paid = "paid"
    cancelled = "cancelled"


class JobPaymentStatus(str, Enum):
    """Money lifecycle of a job as seen by the poster."""

    unpaid = "unpaid"
    pending = "pending"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"
    partial_refunded = "partial_refunded"


class ApplicationStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    withdrawn = "withdrawn"


class PaymentKind(str, Enum):
    """What a payment row records."""

    job_payment = "job_payment"  # Upfront charge for a fixed-price job
    worker_payment = "worker_payment"  # Split charge settling an hourly job
    refund = "refund"
    payout = "payout"  # Transfer to a worker's connected account


class PaymentStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    succeeded = "succeeded"
    failed = "failed"
    refunded = "refunded"
    partial_refunded = "partial_refunded"
    canceled = "canceled"


class EarningStatus(str, Enum):
    pending = "pending"
    processing = "processing"  # Transfer in flight
    paid = "paid"
    failed = "failed"
    cancelled = "cancelled"


class AccountStatus(str, Enum):
    """Connected payout account readiness."""

    incomplete = "incomplete"
    pending = "pending"
    active = "active"
    restricted = "restricted"


# Payment statuses that mean money was captured.
CAPTURED_STATUSES = frozenset({PaymentStatus.succeeded, PaymentStatus.completed})

# Forward-only payment status moves. Anything else is a stale or duplicate event.
PAYMENT_STATUS_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.pending: frozenset(
        {
            PaymentStatus.succeeded,
            PaymentStatus.completed,
            PaymentStatus.failed,
            PaymentStatus.canceled,
        }
    ),
    # A later success wins over an earlier failure; the processor is authoritative.
    PaymentStatus.failed: frozenset({PaymentStatus.succeeded, PaymentStatus.completed}),
    PaymentStatus.succeeded: frozenset({PaymentStatus.refunded, PaymentStatus.partial_refunded}),
    # Payout rows are "completed"; a reversed transfer marks them failed
    PaymentStatus.completed: frozenset(
        {PaymentStatus.refunded, PaymentStatus.partial_refunded, PaymentStatus.failed}
    ),
    PaymentStatus.partial_refunded: frozenset({PaymentStatus.refunded}),
}

EARNING_STATUS_TRANSITIONS: dict[EarningStatus, frozenset[EarningStatus]] = {
    EarningStatus.pending: frozenset(
        {EarningStatus.processing, EarningStatus.paid, EarningStatus.failed, EarningStatus.cancelled}
    ),
    # A payout attempt that did not go through returns to pending or failed
    EarningStatus.processing: frozenset({EarningStatus.paid, EarningStatus.failed, EarningStatus.pending}),
    EarningStatus.failed: frozenset(
        {EarningStatus.processing, EarningStatus.paid, EarningStatus.pending, EarningStatus.cancelled}
    ),
    # Only a processor-reported transfer failure or reversal reopens a paid earning
    EarningStatus.paid: frozenset({EarningStatus.failed}),
}


def can_transition_payment(from_status: PaymentStatus, to_status: PaymentStatus) -> bool:
    """Check if a payment status move is allowed."""
    return to_status in PAYMENT_STATUS_TRANSITIONS.get(from_status, frozenset())


def can_transition_earning(from_status: EarningStatus, to_status: EarningStatus) -> bool:
    """Check if an earning status move is allowed."""
    return to_status in EARNING_STATUS_TRANSITIONS.get(from_status, frozenset())


# =============================================================================
# Money helpers
# =============================================================================


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENTS)


def compute_total(payment_type: PaymentType, payment_amount: Decimal, service_fee: Decimal) -> Decimal:
    """Total charged to the poster up front.

    Fixed-price jobs carry the platform fee in the total. Hourly jobs add the
    fee at settlement, so their total is just the rate until then.
    """
    if PaymentType(payment_type) == PaymentType.fixed:
        return quantize(payment_amount + service_fee)
    return quantize(payment_amount)


def compute_net(amount: Decimal, service_fee: Decimal) -> Decimal:
    """Worker net for an earning: gross amount minus the platform fee."""
    return quantize(amount - service_fee)


def to_cents(amount: Decimal) -> int:
    """Convert a dollar amount to integer minor units for the processor."""
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def from_cents(cents: int) -> Decimal:
    return quantize(Decimal(cents) / 100)


# =============================================================================
# Records
# =============================================================================


class Job(BaseModel):
    """A unit of work posted by a poster."""

    id: int
    poster_id: str
    worker_id: str | None = None
    title: str
    description: str
    category: str | None = None
    payment_type: PaymentType
    payment_amount: Decimal
    service_fee: Decimal
    total_amount: Decimal
    status: JobStatus = JobStatus.open
    payment_status: JobPaymentStatus = JobPaymentStatus.unpaid
    tasks_completed: int = 0
    tasks_total: int = 0
    date_posted: datetime | None = None
    date_needed: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_fixed_price(self) -> bool:
        return self.payment_type == PaymentType.fixed

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.poster_id, self.worker_id)


class Task(BaseModel):
    """An ordered sub-item of a job."""

    id: int
    job_id: int
    description: str
    position: int
    is_completed: bool = False
    completed_by: str | None = None
    completed_at: datetime | None = None
    bonus_amount: Decimal | None = None
    created_at: datetime | None = None


class JobApplication(BaseModel):
    id: int
    job_id: int
    worker_id: str
    message: str = ""
    status: ApplicationStatus = ApplicationStatus.pending
    created_at: datetime | None = None


class Payment(BaseModel):
    """A charge, refund or payout tied to an external transaction id."""

    id: int
    user_id: str  # Payer (or the worker for payouts)
    worker_id: str | None = None
    job_id: int | None = None
    amount: Decimal
    service_fee: Decimal = Decimal("0")
    type: PaymentKind
    status: PaymentStatus
    transaction_id: str | None = None
    stripe_customer_id: str | None = None
    stripe_connect_account_id: str | None = None
    description: str | None = None
    created_at: datetime | None = None

    @property
    def is_captured(self) -> bool:
        return self.status in CAPTURED_STATUSES


class Earning(BaseModel):
    """Money owed or paid to a worker for a completed job."""

    id: int
    worker_id: str
    job_id: int
    amount: Decimal
    service_fee: Decimal
    net_amount: Decimal
    status: EarningStatus = EarningStatus.pending
    transaction_id: str | None = None
    date_earned: datetime | None = None
    date_paid: datetime | None = None


class PaymentAccount(BaseModel):
    """Per-user processor mapping: customer id and connected payout account."""

    user_id: str
    email: str | None = None
    stripe_customer_id: str | None = None
    stripe_connect_account_id: str | None = None
    connect_account_status: AccountStatus | None = None
    updated_at: datetime | None = None

    @property
    def can_receive_payouts(self) -> bool:
        return bool(self.stripe_connect_account_id)


class EarningsSummary(BaseModel):
    """Aggregated earnings for a worker."""

    earnings: list[Earning] = Field(default_factory=list)
    total_pending: Decimal = Decimal("0")
    total_paid: Decimal = Decimal("0")
    total_net: Decimal = Decimal("0")
