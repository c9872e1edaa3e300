"""Ledger store interface and in-memory backend.

The ``LedgerStore`` protocol is the single repository the orchestrator and
reconciler depend on. Uniqueness of external transaction ids and of one
earning per (job, worker) is enforced here, not by callers.
"""

import itertools
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional, Protocol

from app.errors import DuplicateRecordError

from .models import (
    AccountStatus,
    ApplicationStatus,
    Earning,
    EarningStatus,
    Job,
    JobApplication,
    JobStatus,
    Payment,
    PaymentAccount,
    PaymentKind,
    PaymentStatus,
    PaymentType,
    Task,
    compute_net,
    quantize,
)

logger = logging.getLogger("fixer.ledger")

# Error codes returned by the transition_* methods
NOT_FOUND = "not_found"
CONFLICT = "conflict"


class LedgerStore(Protocol):
    """Protocol for ledger persistence backends."""

    # Jobs
    async def create_job(
        self,
        *,
        poster_id: str,
        title: str,
        description: str,
        payment_type: PaymentType,
        payment_amount: Decimal,
        service_fee: Decimal,
        total_amount: Decimal,
        category: Optional[str] = None,
        date_needed: Optional[datetime] = None,
    ) -> Job:
        """Create a job in ``open``/``unpaid`` state."""
        ...

    async def get_job(self, job_id: int) -> Optional[Job]:
        ...

    async def list_jobs(
        self,
        *,
        status: Optional[JobStatus] = None,
        poster_id: Optional[str] = None,
        worker_id: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        ...

    async def update_job(self, job_id: int, **fields: Any) -> Optional[Job]:
        """Update fields on a job. Returns None if the job does not exist."""
        ...

    async def transition_job(
        self,
        job_id: int,
        expected: Iterable[JobStatus],
        new_status: JobStatus,
        **fields: Any,
    ) -> tuple[Optional[Job], Optional[str]]:
        """Move a job to ``new_status`` only if its status is in ``expected``.

        Returns (job, None), (None, "not_found") or (None, "conflict").
        """
        ...

    async def delete_job(self, job_id: int) -> bool:
        """Delete a job with its tasks and applications. Payments and earnings remain."""
        ...

    # Tasks
    async def create_task(
        self, job_id: int, description: str, bonus_amount: Optional[Decimal] = None
    ) -> Task:
        """Append a task at the end of the job's ordering."""
        ...

    async def get_task(self, task_id: int) -> Optional[Task]:
        ...

    async def list_tasks(self, job_id: int) -> list[Task]:
        """Tasks for a job ordered by position."""
        ...

    async def update_task(self, task_id: int, **fields: Any) -> Optional[Task]:
        ...

    async def delete_task(self, task_id: int) -> bool:
        """Delete a task and close the gap in the job's positions."""
        ...

    async def set_task_positions(self, job_id: int, ordered_ids: list[int]) -> list[Task]:
        """Assign positions 0..n-1 following ``ordered_ids``."""
        ...

    # Applications
    async def create_application(self, job_id: int, worker_id: str, message: str = "") -> JobApplication:
        ...

    async def get_application(self, application_id: int) -> Optional[JobApplication]:
        ...

    async def list_applications(
        self, *, job_id: Optional[int] = None, worker_id: Optional[str] = None
    ) -> list[JobApplication]:
        ...

    async def transition_application(
        self,
        application_id: int,
        expected: Iterable[ApplicationStatus],
        new_status: ApplicationStatus,
    ) -> tuple[Optional[JobApplication], Optional[str]]:
        ...

    # Payments
    async def create_payment(
        self,
        *,
        user_id: str,
        amount: Decimal,
        type: PaymentKind,
        status: PaymentStatus,
        job_id: Optional[int] = None,
        worker_id: Optional[str] = None,
        service_fee: Decimal = Decimal("0"),
        transaction_id: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        stripe_connect_account_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Payment:
        """Insert a payment. Raises DuplicateRecordError on a reused transaction id."""
        ...

    async def get_payment(self, payment_id: int) -> Optional[Payment]:
        ...

    async def get_payment_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        ...

    async def list_payments(
        self,
        *,
        job_id: Optional[int] = None,
        participant_id: Optional[str] = None,
        type: Optional[PaymentKind] = None,
    ) -> list[Payment]:
        """Payments newest first. ``participant_id`` matches payer or payee."""
        ...

    async def transition_payment(
        self,
        payment_id: int,
        expected: Iterable[PaymentStatus],
        new_status: PaymentStatus,
        **fields: Any,
    ) -> tuple[Optional[Payment], Optional[str]]:
        ...

    # Earnings
    async def create_earning(
        self,
        *,
        worker_id: str,
        job_id: int,
        amount: Decimal,
        service_fee: Decimal,
        status: EarningStatus = EarningStatus.pending,
        transaction_id: Optional[str] = None,
        date_paid: Optional[datetime] = None,
    ) -> Earning:
        """Insert an earning. Raises DuplicateRecordError if one exists for (job, worker)."""
        ...

    async def get_earning(self, earning_id: int) -> Optional[Earning]:
        ...

    async def get_earning_for_job(self, job_id: int, worker_id: str) -> Optional[Earning]:
        ...

    async def get_earning_by_transaction(self, transaction_id: str) -> Optional[Earning]:
        ...

    async def list_earnings(
        self, *, worker_id: Optional[str] = None, job_id: Optional[int] = None
    ) -> list[Earning]:
        ...

    async def transition_earning(
        self,
        earning_id: int,
        expected: Iterable[EarningStatus],
        new_status: EarningStatus,
        **fields: Any,
    ) -> tuple[Optional[Earning], Optional[str]]:
        ...

    async def reprice_earning(
        self, earning_id: int, amount: Decimal, service_fee: Decimal
    ) -> Optional[Earning]:
        """Set gross amount and fee; net amount is recomputed from them."""
        ...

    # Payment accounts
    async def get_account(self, user_id: str) -> Optional[PaymentAccount]:
        ...

    async def get_account_by_connect_id(self, account_id: str) -> Optional[PaymentAccount]:
        ...

    async def save_account(self, user_id: str, **fields: Any) -> PaymentAccount:
        """Create or update the user's payment account mapping (last write wins)."""
        ...


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class InMemoryLedgerStore:
    """In-memory ledger for testing and local development.

    Each method runs without awaiting, so check-then-insert sequences are
    atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self):
        """Initialize empty storage."""
        self._ids = itertools.count(1)
        self._jobs: dict[int, Job] = {}
        self._tasks: dict[int, Task] = {}
        self._applications: dict[int, JobApplication] = {}
        self._payments: dict[int, Payment] = {}
        self._earnings: dict[int, Earning] = {}
        self._accounts: dict[str, PaymentAccount] = {}

    def _next_id(self) -> int:
        return next(self._ids)

    # === Jobs ===

    async def create_job(
        self,
        *,
        poster_id: str,
        title: str,
        description: str,
        payment_type: PaymentType,
        payment_amount: Decimal,
        service_fee: Decimal,
        total_amount: Decimal,
        category: Optional[str] = None,
        date_needed: Optional[datetime] = None,
    ) -> Job:
        job = Job(
            id=self._next_id(),
            poster_id=poster_id,
            title=title,
            description=description,
            category=category,
            payment_type=payment_type,
            payment_amount=quantize(payment_amount),
            service_fee=quantize(service_fee),
            total_amount=quantize(total_amount),
            date_posted=_utc_now(),
            date_needed=date_needed,
        )
        self._jobs[job.id] = job
        return job

    async def get_job(self, job_id: int) -> Optional[Job]:
        return self._jobs.get(job_id)

    async def list_jobs(
        self,
        *,
        status: Optional[JobStatus] = None,
        poster_id: Optional[str] = None,
        worker_id: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        jobs = list(self._jobs.values())
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        if poster_id is not None:
            jobs = [j for j in jobs if j.poster_id == poster_id]
        if worker_id is not None:
            jobs = [j for j in jobs if j.worker_id == worker_id]
        if category is not None:
            jobs = [j for j in jobs if j.category == category]
        jobs.sort(key=lambda j: j.id, reverse=True)
        return jobs[offset : offset + limit]

    async def update_job(self, job_id: int, **fields: Any) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        updated = job.model_copy(update=fields)
        self._jobs[job_id] = updated
        return updated

    async def transition_job(
        self,
        job_id: int,
        expected: Iterable[JobStatus],
        new_status: JobStatus,
        **fields: Any,
    ) -> tuple[Optional[Job], Optional[str]]:
        job = self._jobs.get(job_id)
        if job is None:
            return None, NOT_FOUND
        if job.status not in set(expected):
            logger.warning(
                "Job %s transition to %s rejected: status is %s",
                job_id,
                new_status.value,
                job.status.value,
            )
            return None, CONFLICT
        updated = job.model_copy(update={"status": new_status, **fields})
        self._jobs[job_id] = updated
        return updated, None

    async def delete_job(self, job_id: int) -> bool:
        if self._jobs.pop(job_id, None) is None:
            return False
        self._tasks = {k: t for k, t in self._tasks.items() if t.job_id != job_id}
        self._applications = {k: a for k, a in self._applications.items() if a.job_id != job_id}
        return True

    # === Tasks ===

    async def create_task(
        self, job_id: int, description: str, bonus_amount: Optional[Decimal] = None
    ) -> Task:
        position = len([t for t in self._tasks.values() if t.job_id == job_id])
        task = Task(
            id=self._next_id(),
            job_id=job_id,
            description=description,
            position=position,
            bonus_amount=bonus_amount,
            created_at=_utc_now(),
        )
        self._tasks[task.id] = task
        return task

    async def get_task(self, task_id: int) -> Optional[Task]:
        return self._tasks.get(task_id)

    async def list_tasks(self, job_id: int) -> list[Task]:
        tasks = [t for t in self._tasks.values() if t.job_id == job_id]
        return sorted(tasks, key=lambda t: t.position)

    async def update_task(self, task_id: int, **fields: Any) -> Optional[Task]:
        task = self._tasks.get(task_id)
        if task is None:
            return None
        updated = task.model_copy(update=fields)
        self._tasks[task_id] = updated
        return updated

    async def delete_task(self, task_id: int) -> bool:
        task = self._tasks.pop(task_id, None)
        if task is None:
            return False
        for other in await self.list_tasks(task.job_id):
            if other.position > task.position:
                self._tasks[other.id] = other.model_copy(update={"position": other.position - 1})
        return True

    async def set_task_positions(self, job_id: int, ordered_ids: list[int]) -> list[Task]:
        for position, task_id in enumerate(ordered_ids):
            task = self._tasks[task_id]
            self._tasks[task_id] = task.model_copy(update={"position": position})
        return await self.list_tasks(job_id)

    # === Applications ===

    async def create_application(self, job_id: int, worker_id: str, message: str = "") -> JobApplication:
        application = JobApplication(
            id=self._next_id(),
            job_id=job_id,
            worker_id=worker_id,
            message=message,
            created_at=_utc_now(),
        )
        self._applications[application.id] = application
        return application

    async def get_application(self, application_id: int) -> Optional[JobApplication]:
        return self._applications.get(application_id)

    async def list_applications(
        self, *, job_id: Optional[int] = None, worker_id: Optional[str] = None
    ) -> list[JobApplication]:
        apps = list(self._applications.values())
        if job_id is not None:
            apps = [a for a in apps if a.job_id == job_id]
        if worker_id is not None:
            apps = [a for a in apps if a.worker_id == worker_id]
        return sorted(apps, key=lambda a: a.id, reverse=True)

    async def transition_application(
        self,
        application_id: int,
        expected: Iterable[ApplicationStatus],
        new_status: ApplicationStatus,
    ) -> tuple[Optional[JobApplication], Optional[str]]:
        application = self._applications.get(application_id)
        if application is None:
            return None, NOT_FOUND
        if application.status not in set(expected):
            return None, CONFLICT
        updated = application.model_copy(update={"status": new_status})
        self._applications[application_id] = updated
        return updated, None

    # === Payments ===

    def _check_payment_transaction(self, transaction_id: Optional[str], payment_id: Optional[int] = None):
        if not transaction_id:
            return
        for payment in self._payments.values():
            if payment.transaction_id == transaction_id and payment.id != payment_id:
                raise DuplicateRecordError(
                    f"Payment with transaction {transaction_id} already exists",
                    key=transaction_id,
                )

    async def create_payment(
        self,
        *,
        user_id: str,
        amount: Decimal,
        type: PaymentKind,
        status: PaymentStatus,
        job_id: Optional[int] = None,
        worker_id: Optional[str] = None,
        service_fee: Decimal = Decimal("0"),
        transaction_id: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        stripe_connect_account_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Payment:
        self._check_payment_transaction(transaction_id)
        payment = Payment(
            id=self._next_id(),
            user_id=user_id,
            worker_id=worker_id,
            job_id=job_id,
            amount=quantize(amount),
            service_fee=quantize(service_fee),
            type=type,
            status=status,
            transaction_id=transaction_id,
            stripe_customer_id=stripe_customer_id,
            stripe_connect_account_id=stripe_connect_account_id,
            description=description,
            created_at=_utc_now(),
        )
        self._payments[payment.id] = payment
        return payment

    async def get_payment(self, payment_id: int) -> Optional[Payment]:
        return self._payments.get(payment_id)

    async def get_payment_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        for payment in self._payments.values():
            if payment.transaction_id == transaction_id:
                return payment
        return None

    async def list_payments(
        self,
        *,
        job_id: Optional[int] = None,
        participant_id: Optional[str] = None,
        type: Optional[PaymentKind] = None,
    ) -> list[Payment]:
        payments = list(self._payments.values())
        if job_id is not None:
            payments = [p for p in payments if p.job_id == job_id]
        if participant_id is not None:
            payments = [p for p in payments if participant_id in (p.user_id, p.worker_id)]
        if type is not None:
            payments = [p for p in payments if p.type == type]
        return sorted(payments, key=lambda p: p.id, reverse=True)

    async def transition_payment(
        self,
        payment_id: int,
        expected: Iterable[PaymentStatus],
        new_status: PaymentStatus,
        **fields: Any,
    ) -> tuple[Optional[Payment], Optional[str]]:
        payment = self._payments.get(payment_id)
        if payment is None:
            return None, NOT_FOUND
        if payment.status not in set(expected):
            return None, CONFLICT
        if "transaction_id" in fields:
            self._check_payment_transaction(fields["transaction_id"], payment_id)
        updated = payment.model_copy(update={"status": new_status, **fields})
        self._payments[payment_id] = updated
        return updated, None

    # === Earnings ===

    async def create_earning(
        self,
        *,
        worker_id: str,
        job_id: int,
        amount: Decimal,
        service_fee: Decimal,
        status: EarningStatus = EarningStatus.pending,
        transaction_id: Optional[str] = None,
        date_paid: Optional[datetime] = None,
    ) -> Earning:
        if await self.get_earning_for_job(job_id, worker_id) is not None:
            raise DuplicateRecordError(
                f"Earning for job {job_id} and worker {worker_id} already exists",
                key=f"{job_id}:{worker_id}",
            )
        if transaction_id and await self.get_earning_by_transaction(transaction_id) is not None:
            raise DuplicateRecordError(
                f"Earning with transaction {transaction_id} already exists",
                key=transaction_id,
            )
        earning = Earning(
            id=self._next_id(),
            worker_id=worker_id,
            job_id=job_id,
            amount=quantize(amount),
            service_fee=quantize(service_fee),
            net_amount=compute_net(amount, service_fee),
            status=status,
            transaction_id=transaction_id,
            date_earned=_utc_now(),
            date_paid=date_paid,
        )
        self._earnings[earning.id] = earning
        return earning

    async def get_earning(self, earning_id: int) -> Optional[Earning]:
        return self._earnings.get(earning_id)

    async def get_earning_for_job(self, job_id: int, worker_id: str) -> Optional[Earning]:
        for earning in self._earnings.values():
            if earning.job_id == job_id and earning.worker_id == worker_id:
                return earning
        return None

    async def get_earning_by_transaction(self, transaction_id: str) -> Optional[Earning]:
        for earning in self._earnings.values():
            if earning.transaction_id == transaction_id:
                return earning
        return None

    async def list_earnings(
        self, *, worker_id: Optional[str] = None, job_id: Optional[int] = None
    ) -> list[Earning]:
        earnings = list(self._earnings.values())
        if worker_id is not None:
            earnings = [e for e in earnings if e.worker_id == worker_id]
        if job_id is not None:
            earnings = [e for e in earnings if e.job_id == job_id]
        return sorted(earnings, key=lambda e: e.id, reverse=True)

    async def transition_earning(
        self,
        earning_id: int,
        expected: Iterable[EarningStatus],
        new_status: EarningStatus,
        **fields: Any,
    ) -> tuple[Optional[Earning], Optional[str]]:
        earning = self._earnings.get(earning_id)
        if earning is None:
            return None, NOT_FOUND
        if earning.status not in set(expected):
            return None, CONFLICT
        updated = earning.model_copy(update={"status": new_status, **fields})
        self._earnings[earning_id] = updated
        return updated, None

    async def reprice_earning(
        self, earning_id: int, amount: Decimal, service_fee: Decimal
    ) -> Optional[Earning]:
        earning = self._earnings.get(earning_id)
        if earning is None:
            return None
        updated = earning.model_copy(
            update={
                "amount": quantize(amount),
                "service_fee": quantize(service_fee),
                "net_amount": compute_net(amount, service_fee),
            }
        )
        self._earnings[earning_id] = updated
        return updated

    # === Payment accounts ===

    async def get_account(self, user_id: str) -> Optional[PaymentAccount]:
        return self._accounts.get(user_id)

    async def get_account_by_connect_id(self, account_id: str) -> Optional[PaymentAccount]:
        for account in self._accounts.values():
            if account.stripe_connect_account_id == account_id:
                return account
        return None

    async def save_account(self, user_id: str, **fields: Any) -> PaymentAccount:
        if "connect_account_status" in fields and fields["connect_account_status"] is not None:
            fields["connect_account_status"] = AccountStatus(fields["connect_account_status"])
        existing = self._accounts.get(user_id) or PaymentAccount(user_id=user_id)
        updated = existing.model_copy(update={**fields, "updated_at": _utc_now()})
        self._accounts[user_id] = updated
        return updated
