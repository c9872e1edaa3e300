"""Job payment orchestrator.

Drives a job's money through its lifecycle: upfront charge for fixed-price
jobs, settlement of hourly jobs, payout to the worker on completion and
refund on cancellation. Ledger writes and gateway calls are sequenced
(guard -> ledger write -> gateway call -> ledger update) but not wrapped in
one transaction; the event reconciler repairs anything a crash leaves
behind.

Policy:
- A failed upfront charge never rolls back job creation.
- A failed payout never blocks job completion and is not retried here.
- A failed refund never blocks cancellation.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional

from app.errors import (
    AuthorizationError,
    DuplicateRecordError,
    GatewayError,
    GatewayRejected,
    NotFoundError,
    ValidationError,
)
from app.gateway.base import ChargeOptions, ChargeResult, ConnectedAccountInfo, PaymentGateway
from app.guard import MAX_PAYMENT_AMOUNT, MIN_PAYMENT_AMOUNT, check_amount, check_job_content
from app.ledger.models import (
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
    compute_total,
    quantize,
    to_cents,
)
from app.ledger.store import CONFLICT, LedgerStore
from app.logging_config import log_payment_event
from app.notifier import Notification, NotificationType, Notifier

from .lifecycle import PaymentLifecycle, can_transition, charge_lifecycle, derive_lifecycle

logger = logging.getLogger("fixer.payments.orchestrator")

DEFAULT_SERVICE_FEE = Decimal("2.50")

ACTIVE_WORK_STATUSES = (JobStatus.assigned, JobStatus.in_progress)
FINISHED_STATUSES = (JobStatus.completed, JobStatus.paid)
REFUNDABLE_KINDS = (PaymentKind.job_payment, PaymentKind.worker_payment)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _job_payment_status_for(status: PaymentStatus) -> JobPaymentStatus:
    if status in (PaymentStatus.succeeded, PaymentStatus.completed):
        return JobPaymentStatus.paid
    if status in (PaymentStatus.failed, PaymentStatus.canceled):
        return JobPaymentStatus.failed
    return JobPaymentStatus.pending


# =============================================================================
# Results
# =============================================================================


@dataclass
class JobCreation:
    """A created job plus the outcome of its upfront charge, if any."""

    job: Job
    payment: Optional[Payment] = None
    payment_error: Optional[str] = None


@dataclass
class CancellationResult:
    success: bool
    message: str
    refund_processed: bool = False
    refund: Optional[Payment] = None


@dataclass
class AccountStatusView:
    """Connected payout account status as shown to its owner."""

    exists: bool
    account_status: AccountStatus = AccountStatus.incomplete
    charges_enabled: bool = False
    payouts_enabled: bool = False
    requirements_due: list[str] = field(default_factory=list)
    onboarding_url: Optional[str] = None
    account_id: Optional[str] = None


# =============================================================================
# Orchestrator
# =============================================================================


class JobPaymentOrchestrator:
    """Coordinates the ledger, the payment gateway and notifications."""

    def __init__(
        self,
        ledger: LedgerStore,
        gateway: PaymentGateway,
        notifier: Notifier,
        service_fee: Decimal = DEFAULT_SERVICE_FEE,
        min_amount: Decimal = MIN_PAYMENT_AMOUNT,
        max_amount: Decimal = MAX_PAYMENT_AMOUNT,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.notifier = notifier
        self.service_fee = quantize(service_fee)
        self.min_amount = min_amount
        self.max_amount = max_amount

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def notify(
        self,
        user_id: Optional[str],
        type: NotificationType,
        title: str,
        message: str,
        job_id: Optional[int] = None,
        **metadata,
    ) -> None:
        """Send a notification. Delivery problems never affect money flow."""
        if not user_id:
            return
        try:
            await self.notifier.notify(
                Notification(
                    user_id=user_id,
                    type=type,
                    title=title,
                    message=message,
                    job_id=job_id,
                    metadata=metadata,
                )
            )
        except Exception as e:
            logger.warning("Failed to send %s notification to %s: %s", type.value, user_id, e)

    def _check_amount(self, amount: Decimal) -> None:
        result = check_amount(amount, self.min_amount, self.max_amount)
        if not result.approved:
            raise ValidationError(result.reason)

    def _check_content(self, title: str, description: str) -> None:
        result = check_job_content(title, description)
        if not result.approved:
            raise ValidationError(result.reason)

    async def get_job(self, job_id: int) -> Job:
        job = await self.ledger.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        return job

    async def _get_poster_job(self, job_id: int, actor_id: str, action: str) -> Job:
        job = await self.get_job(job_id)
        if job.poster_id != actor_id:
            raise AuthorizationError(f"Only the job poster can {action}")
        return job

    async def lifecycle_of(self, job: Job) -> PaymentLifecycle:
        earning = None
        if job.worker_id:
            earning = await self.ledger.get_earning_for_job(job.id, job.worker_id)
        return derive_lifecycle(job, earning)

    async def _captured_job_payment(self, job_id: int) -> Optional[Payment]:
        """Most recent captured charge for a job, if any."""
        for payment in await self.ledger.list_payments(job_id=job_id):
            if payment.type in REFUNDABLE_KINDS and payment.is_captured:
                return payment
        return None

    async def _record_payment(self, **fields) -> Payment:
        """Insert a payment, tolerating a row the reconciler already wrote."""
        try:
            return await self.ledger.create_payment(**fields)
        except DuplicateRecordError:
            existing = await self.ledger.get_payment_by_transaction(fields["transaction_id"])
            if existing is None:
                raise
            logger.info("Payment %s already recorded by reconciler", fields["transaction_id"])
            return existing

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(
        self,
        poster_id: str,
        *,
        title: str,
        description: str,
        payment_type: PaymentType,
        payment_amount: Decimal,
        category: Optional[str] = None,
        date_needed: Optional[datetime] = None,
        payment_method_id: Optional[str] = None,
        poster_email: Optional[str] = None,
    ) -> JobCreation:
        """Create a job and, for fixed-price jobs, charge the poster up front.

        The job is kept even when the charge fails; the caller gets the
        failure reason and can retry payment separately.
        """
        self._check_content(title, description)
        self._check_amount(payment_amount)

        payment_type = PaymentType(payment_type)
        job = await self.ledger.create_job(
            poster_id=poster_id,
            title=title.strip(),
            description=description.strip(),
            category=category,
            date_needed=date_needed,
            payment_type=payment_type,
            payment_amount=payment_amount,
            service_fee=self.service_fee,
            total_amount=compute_total(payment_type, payment_amount, self.service_fee),
        )
        logger.info("Job created | id=%s | poster=%s | type=%s", job.id, poster_id, payment_type.value)

        if payment_type != PaymentType.fixed or not payment_method_id:
            return JobCreation(job=job)

        try:
            payment = await self._charge_job(job, poster_id, payment_method_id, poster_email)
        except (GatewayRejected, GatewayError) as e:
            logger.warning("Upfront charge failed for job %s: %s", job.id, e.message)
            return JobCreation(job=await self.get_job(job.id), payment_error=e.message)
        return JobCreation(job=await self.get_job(job.id), payment=payment)

    async def _charge_job(
        self,
        job: Job,
        payer_id: str,
        payment_method_id: str,
        email: Optional[str] = None,
    ) -> Payment:
        customer_id = await self.gateway.ensure_customer(payer_id, email)
        previous = await self.ledger.list_payments(job_id=job.id, type=PaymentKind.job_payment)
        metadata = {
            "jobId": str(job.id),
            "posterId": job.poster_id,
            "paymentAmount": str(job.payment_amount),
            "serviceFee": str(job.service_fee),
            "paymentType": PaymentKind.job_payment.value,
        }
        charge = await self.gateway.create_charge(
            customer_id,
            payment_method_id,
            to_cents(job.total_amount),
            metadata,
            ChargeOptions(
                capture_now=True,
                idempotency_key=f"job-{job.id}-charge-{len(previous)}-{payment_method_id}",
            ),
        )
        payment = await self._record_payment(
            user_id=payer_id,
            job_id=job.id,
            amount=job.payment_amount,
            service_fee=job.service_fee,
            type=PaymentKind.job_payment,
            status=charge.payment_status,
            transaction_id=charge.external_id,
            stripe_customer_id=customer_id,
            description=f"Payment for job: {job.title}",
        )
        await self.ledger.update_job(job.id, payment_status=_job_payment_status_for(payment.status))
        log_payment_event(
            logger,
            "job_charged",
            job=job.id,
            payment=payment.id,
            intent=charge.external_id,
            status=payment.status.value,
            total=job.total_amount,
        )
        return payment

    async def pay_for_job(
        self,
        job_id: int,
        payer_id: str,
        payment_method_id: str,
        amount: Decimal,
        payment_type: PaymentType,
        payer_email: Optional[str] = None,
    ) -> Payment:
        """Charge an existing fixed-price job (the retry-payment path)."""
        job = await self._get_poster_job(job_id, payer_id, "pay for this job")
        if PaymentType(payment_type) != job.payment_type:
            raise ValidationError("Payment type does not match the job")
        if job.payment_type == PaymentType.hourly:
            raise ValidationError("Hourly jobs are paid at settlement after completion")
        self._check_amount(amount)
        if quantize(Decimal(str(amount))) != job.payment_amount:
            raise ValidationError("Payment amount does not match the job")

        state = charge_lifecycle(job)
        if not can_transition(state, PaymentLifecycle.charging):
            raise ValidationError(f"Job cannot be charged while payment is {state.value}")

        payment = await self._charge_job(job, payer_id, payment_method_id, payer_email)
        if payment.is_captured and job.status in FINISHED_STATUSES:
            # Work finished before the charge cleared; pay the worker now
            await self.settle_completed_job(await self.get_job(job_id))
        return payment

    async def list_jobs(
        self,
        *,
        status: Optional[JobStatus] = None,
        poster_id: Optional[str] = None,
        worker_id: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Job]:
        return await self.ledger.list_jobs(
            status=status,
            poster_id=poster_id,
            worker_id=worker_id,
            category=category,
            limit=limit,
            offset=offset,
        )

    async def update_job(self, job_id: int, actor_id: str, **changes) -> Job:
        """Edit an open job. Totals are recomputed whenever pricing changes."""
        job = await self._get_poster_job(job_id, actor_id, "edit this job")
        if job.status != JobStatus.open:
            raise ValidationError("Only open jobs can be edited")

        changes = {k: v for k, v in changes.items() if v is not None}
        pricing_changed = "payment_amount" in changes or "payment_type" in changes
        if pricing_changed and job.payment_status not in (JobPaymentStatus.unpaid, JobPaymentStatus.failed):
            raise ValidationError("Payment terms cannot change after the job has been paid")

        for key in ("title", "description"):
            if key in changes:
                changes[key] = changes[key].strip()
        if "title" in changes or "description" in changes:
            self._check_content(changes.get("title", job.title), changes.get("description", job.description))

        if pricing_changed:
            payment_type = PaymentType(changes.get("payment_type", job.payment_type))
            payment_amount = Decimal(str(changes.get("payment_amount", job.payment_amount)))
            self._check_amount(payment_amount)
            changes["payment_type"] = payment_type
            changes["payment_amount"] = quantize(payment_amount)
            changes["total_amount"] = compute_total(payment_type, payment_amount, job.service_fee)

        updated = await self.ledger.update_job(job_id, **changes)
        if updated is None:
            raise NotFoundError("Job not found")
        logger.info("Job updated | id=%s | fields=%s", job_id, sorted(changes))
        return updated

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    async def apply_to_job(self, job_id: int, worker_id: str, message: str = "") -> JobApplication:
        job = await self.get_job(job_id)
        if job.status != JobStatus.open:
            raise ValidationError("Job is not accepting applications")
        if job.poster_id == worker_id:
            raise ValidationError("Cannot apply to your own job")
        existing = await self.ledger.list_applications(job_id=job_id, worker_id=worker_id)
        if existing:
            raise ValidationError("You have already applied to this job")
        application = await self.ledger.create_application(job_id, worker_id, message)
        logger.info("Application created | id=%s | job=%s | worker=%s", application.id, job_id, worker_id)
        return application

    async def list_applications(self, job_id: int, actor_id: str) -> list[JobApplication]:
        await self._get_poster_job(job_id, actor_id, "view applications")
        return await self.ledger.list_applications(job_id=job_id)

    async def accept_application(self, job_id: int, application_id: int, actor_id: str) -> Job:
        """Assign the applicant as the job's worker. No money moves."""
        job = await self._get_poster_job(job_id, actor_id, "accept applications")
        application = await self.ledger.get_application(application_id)
        if application is None or application.job_id != job_id:
            raise NotFoundError("Application not found")
        if job.status != JobStatus.open:
            raise ValidationError("Job is not open")

        accepted, error = await self.ledger.transition_application(
            application_id, [ApplicationStatus.pending], ApplicationStatus.accepted
        )
        if error == CONFLICT:
            raise ValidationError("Application is no longer pending")
        if accepted is None:
            raise NotFoundError("Application not found")

        assigned, error = await self.ledger.transition_job(
            job_id, [JobStatus.open], JobStatus.assigned, worker_id=application.worker_id
        )
        if assigned is None:
            # Another accept won; put this application back
            await self.ledger.transition_application(
                application_id, [ApplicationStatus.accepted], ApplicationStatus.pending
            )
            raise ValidationError("Job was modified by another request. Please retry.")

        for other in await self.ledger.list_applications(job_id=job_id):
            if other.id != application_id and other.status == ApplicationStatus.pending:
                await self.ledger.transition_application(
                    other.id, [ApplicationStatus.pending], ApplicationStatus.rejected
                )

        worker_id = application.worker_id
        logger.info("Application accepted | job=%s | worker=%s", job_id, worker_id)
        await self.notify(
            worker_id,
            NotificationType.application_accepted,
            "Application Accepted",
            f'Your application for "{job.title}" has been accepted.',
            job_id=job_id,
        )
        account = await self.ledger.get_account(worker_id)
        if account is None or not account.can_receive_payouts:
            await self.notify(
                worker_id,
                NotificationType.setup_payment_account,
                "Payment Account Setup Required",
                "Set up your payment account so you can be paid when this job is complete.",
                job_id=job_id,
            )
        return assigned

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def list_tasks(self, job_id: int) -> list[Task]:
        await self.get_job(job_id)
        return await self.ledger.list_tasks(job_id)

    async def _refresh_task_counts(self, job_id: int) -> tuple[Job, bool]:
        tasks = await self.ledger.list_tasks(job_id)
        completed = sum(1 for t in tasks if t.is_completed)
        job = await self.ledger.update_job(job_id, tasks_total=len(tasks), tasks_completed=completed)
        if job is None:
            raise NotFoundError("Job not found")
        return job, bool(tasks) and completed == len(tasks)

    async def _get_editable_job(self, job_id: int, actor_id: str) -> Job:
        job = await self._get_poster_job(job_id, actor_id, "edit tasks")
        if job.status in FINISHED_STATUSES:
            raise ValidationError("Tasks cannot be changed after the job is completed")
        return job

    async def _get_job_task(self, job_id: int, task_id: int) -> Task:
        task = await self.ledger.get_task(task_id)
        if task is None or task.job_id != job_id:
            raise NotFoundError("Task not found")
        return task

    async def add_tasks(
        self,
        job_id: int,
        actor_id: str,
        items: Iterable[tuple[str, Optional[Decimal]]],
    ) -> list[Task]:
        """Append tasks to a job in the given order."""
        await self._get_editable_job(job_id, actor_id)
        created = []
        for description, bonus_amount in items:
            description = (description or "").strip()
            if not description:
                raise ValidationError("Task description is required")
            created.append(await self.ledger.create_task(job_id, description, bonus_amount))
        await self._refresh_task_counts(job_id)
        logger.info("Tasks added | job=%s | count=%s", job_id, len(created))
        return created

    async def update_task(
        self,
        job_id: int,
        task_id: int,
        actor_id: str,
        description: Optional[str] = None,
        bonus_amount: Optional[Decimal] = None,
    ) -> Task:
        await self._get_editable_job(job_id, actor_id)
        await self._get_job_task(job_id, task_id)
        changes = {}
        if description is not None:
            if not description.strip():
                raise ValidationError("Task description is required")
            changes["description"] = description.strip()
        if bonus_amount is not None:
            changes["bonus_amount"] = bonus_amount
        task = await self.ledger.update_task(task_id, **changes)
        if task is None:
            raise NotFoundError("Task not found")
        return task

    async def delete_task(self, job_id: int, task_id: int, actor_id: str) -> Job:
        await self._get_editable_job(job_id, actor_id)
        await self._get_job_task(job_id, task_id)
        await self.ledger.delete_task(task_id)
        job, _ = await self._refresh_task_counts(job_id)
        return job

    async def reorder_tasks(self, job_id: int, actor_id: str, task_ids: list[int]) -> list[Task]:
        await self._get_editable_job(job_id, actor_id)
        current = await self.ledger.list_tasks(job_id)
        if len(task_ids) != len(set(task_ids)) or set(task_ids) != {t.id for t in current}:
            raise ValidationError("Task order must list every task of the job exactly once")
        return await self.ledger.set_task_positions(job_id, task_ids)

    async def complete_task(self, job_id: int, task_id: int, actor_id: str) -> Task:
        job = await self.get_job(job_id)
        if job.worker_id != actor_id:
            raise AuthorizationError("Only the assigned worker can complete tasks")
        if job.status not in ACTIVE_WORK_STATUSES:
            raise ValidationError("Tasks can only be completed on an active job")

        task = await self._get_job_task(job_id, task_id)
        if task.is_completed:
            return task
        task = await self.ledger.update_task(
            task_id, is_completed=True, completed_by=actor_id, completed_at=_utc_now()
        )
        if job.status == JobStatus.assigned:
            await self.ledger.transition_job(job_id, [JobStatus.assigned], JobStatus.in_progress)

        job, all_complete = await self._refresh_task_counts(job_id)
        if all_complete:
            await self.notify(
                job.poster_id,
                NotificationType.tasks_completed,
                "All Tasks Completed",
                f'All tasks for "{job.title}" are complete. The worker can now finish the job.',
                job_id=job_id,
            )
        return task

    # ------------------------------------------------------------------
    # Completion and payout
    # ------------------------------------------------------------------

    async def complete_job(self, job_id: int, actor_id: str) -> Job:
        """Mark a job complete, record the worker's earning and attempt payout.

        Repeating the call on a completed job is harmless: the earning is
        looked up, not recreated, and no second transfer is attempted.
        """
        job = await self.get_job(job_id)
        if job.worker_id != actor_id:
            raise AuthorizationError("Only the assigned worker can mark this job as complete")
        if job.status not in ACTIVE_WORK_STATUSES + FINISHED_STATUSES:
            raise ValidationError(f"Job cannot be completed from status '{job.status.value}'")

        tasks = await self.ledger.list_tasks(job_id)
        if not tasks or not all(t.is_completed for t in tasks):
            raise ValidationError("All tasks must be completed before marking the job as complete")

        if job.status in ACTIVE_WORK_STATUSES:
            completed, error = await self.ledger.transition_job(
                job_id, ACTIVE_WORK_STATUSES, JobStatus.completed, completed_at=_utc_now()
            )
            if completed is None:
                job = await self.get_job(job_id)
                if job.status not in FINISHED_STATUSES:
                    raise ValidationError("Job was modified by another request. Please retry.")
            else:
                job = completed
                logger.info("Job completed | id=%s | worker=%s", job_id, actor_id)
                await self.notify(
                    job.poster_id,
                    NotificationType.job_completed,
                    "Job Completed",
                    f'"{job.title}" has been marked as complete.',
                    job_id=job_id,
                )

        earning, created = await self._ensure_earning(job)
        if created:
            await self._payout_new_earning(job, earning)
        return await self.get_job(job_id)

    async def _ensure_earning(self, job: Job) -> tuple[Earning, bool]:
        """Return the job's earning, creating it once per (job, worker)."""
        existing = await self.ledger.get_earning_for_job(job.id, job.worker_id)
        if existing is not None:
            return existing, False
        try:
            earning = await self.ledger.create_earning(
                worker_id=job.worker_id,
                job_id=job.id,
                amount=job.payment_amount,
                service_fee=job.service_fee,
            )
        except DuplicateRecordError:
            existing = await self.ledger.get_earning_for_job(job.id, job.worker_id)
            if existing is None:
                raise
            return existing, False
        log_payment_event(
            logger,
            "earning_created",
            earning=earning.id,
            job=job.id,
            worker=job.worker_id,
            net=earning.net_amount,
        )
        return earning, True

    async def _payout_new_earning(self, job: Job, earning: Earning) -> Earning:
        account = await self.ledger.get_account(job.worker_id)
        if account is None or not account.can_receive_payouts:
            await self.notify(
                job.worker_id,
                NotificationType.setup_payment_account,
                "Setup Payment Account to Receive Funds",
                f'You have earned ${earning.net_amount} for "{job.title}". '
                "Set up your payment account to receive it.",
                job_id=job.id,
                earning_id=earning.id,
            )
            return earning

        source = await self._captured_job_payment(job.id)
        if source is None:
            logger.info("Payout for earning %s deferred: job %s has no captured payment", earning.id, job.id)
            return earning

        return await self._transfer_earning(job, earning, account, source)

    async def _payout_attempt(self, job_id: int) -> int:
        """Count payout attempts the processor refused for this job."""
        payouts = await self.ledger.list_payments(job_id=job_id, type=PaymentKind.payout)
        return sum(1 for p in payouts if p.status == PaymentStatus.failed)

    async def _transfer_earning(
        self,
        job: Job,
        earning: Earning,
        account: PaymentAccount,
        source: Optional[Payment] = None,
        raise_on_failure: bool = False,
    ) -> Earning:
        """Send an earning's net amount to the worker's connected account.

        The earning is moved to ``processing`` before the gateway call, so
        only one request can have a transfer in flight for it. The
        idempotency key changes only after a refused attempt: a retry after
        a transient error reuses the key and gets back any transfer the
        processor already made.
        """
        claimed = None
        if earning.status in (EarningStatus.pending, EarningStatus.failed):
            claimed, _ = await self.ledger.transition_earning(
                earning.id, [earning.status], EarningStatus.processing
            )
        if claimed is None:
            current = await self.ledger.get_earning(earning.id) or earning
            logger.info("Payout for earning %s skipped: earning is %s", earning.id, current.status.value)
            if raise_on_failure:
                raise ValidationError(f"Earning is already {current.status.value}")
            return current

        attempt = await self._payout_attempt(job.id)
        metadata = {
            "jobId": str(job.id),
            "workerId": earning.worker_id,
            "earningId": str(earning.id),
        }
        if source is not None:
            metadata["paymentId"] = str(source.id)

        try:
            transfer = await self.gateway.create_transfer(
                account.stripe_connect_account_id,
                to_cents(earning.net_amount),
                metadata,
                transfer_group=f"job-{job.id}",
                idempotency_key=f"earning-{earning.id}-transfer-{attempt}",
            )
        except (GatewayRejected, GatewayError) as e:
            await self.ledger.transition_earning(earning.id, [EarningStatus.processing], earning.status)
            if isinstance(e, GatewayRejected):
                await self.ledger.create_payment(
                    user_id=job.poster_id,
                    worker_id=earning.worker_id,
                    job_id=job.id,
                    amount=earning.net_amount,
                    type=PaymentKind.payout,
                    status=PaymentStatus.failed,
                    stripe_connect_account_id=account.stripe_connect_account_id,
                    description=f"Payout attempt refused for job: {job.title}",
                )
            logger.warning("Payout failed for earning %s on job %s: %s", earning.id, job.id, e.message)
            issue = "There was an issue processing the payout for this job. Our team will resolve it."
            await self.notify(
                job.worker_id, NotificationType.payment_issue, "Payment Processing Issue", issue, job_id=job.id
            )
            await self.notify(
                job.poster_id, NotificationType.payment_issue, "Payment Processing Issue", issue, job_id=job.id
            )
            if raise_on_failure:
                raise
            return await self.ledger.get_earning(earning.id) or earning

        paid, _ = await self.ledger.transition_earning(
            earning.id,
            [EarningStatus.processing],
            EarningStatus.paid,
            transaction_id=transfer.external_id,
            date_paid=_utc_now(),
        )
        if paid is None:
            # The reconciler saw this transfer's events first
            paid = await self.ledger.get_earning(earning.id) or earning
            if paid.status != EarningStatus.paid:
                logger.warning(
                    "Earning %s is %s after transfer %s", earning.id, paid.status.value, transfer.external_id
                )
                return paid

        await self._record_payment(
            user_id=job.poster_id,
            worker_id=earning.worker_id,
            job_id=job.id,
            amount=earning.net_amount,
            type=PaymentKind.payout,
            status=PaymentStatus.completed,
            transaction_id=transfer.external_id,
            stripe_connect_account_id=account.stripe_connect_account_id,
            description=f"Payout for job: {job.title}",
        )
        await self.ledger.transition_job(job.id, [JobStatus.completed], JobStatus.paid)
        log_payment_event(
            logger,
            "earning_paid",
            earning=earning.id,
            job=job.id,
            transfer=transfer.external_id,
            net=earning.net_amount,
        )
        await self.notify(
            job.worker_id,
            NotificationType.payment_received,
            "Payment Received",
            f'You received ${earning.net_amount} for "{job.title}".',
            job_id=job.id,
        )
        await self.notify(
            job.poster_id,
            NotificationType.payment_sent,
            "Payment Sent to Worker",
            f'Payment of ${earning.net_amount} for "{job.title}" has been sent to the worker.',
            job_id=job.id,
        )
        return paid

    async def settle_completed_job(self, job: Job) -> Optional[Earning]:
        """Create the earning and pay out for a completed job whose charge just cleared.

        Used by the reconciler when the payment success arrives after the
        job was completed. Earnings that already carry a transfer are left
        alone.
        """
        if job.status not in FINISHED_STATUSES or not job.worker_id:
            return None
        earning, _ = await self._ensure_earning(job)
        if earning.status != EarningStatus.pending or earning.transaction_id:
            return earning
        return await self._payout_new_earning(job, earning)

    async def settle_hourly_job(
        self,
        job_id: int,
        actor_id: str,
        payment_method_id: str,
        hours: Decimal,
        payer_email: Optional[str] = None,
    ) -> Payment:
        """Charge the poster for hours worked, routing funds straight to the worker.

        The charge is split: the worker's share goes to their connected
        account and the platform fee stays as the application fee.
        """
        job = await self._get_poster_job(job_id, actor_id, "settle this job")
        if job.payment_type != PaymentType.hourly:
            raise ValidationError("Only hourly jobs are settled by hours")
        if job.status != JobStatus.completed:
            raise ValidationError("Hourly jobs are settled after completion")
        if job.payment_status not in (JobPaymentStatus.unpaid, JobPaymentStatus.failed):
            raise ValidationError("Job has already been settled")
        hours = Decimal(str(hours))
        if hours <= 0:
            raise ValidationError("Hours must be greater than zero")

        account = await self.ledger.get_account(job.worker_id)
        if account is None or not account.can_receive_payouts:
            raise ValidationError("Worker has not set up a payment account")

        worker_amount = quantize(job.payment_amount * hours)
        total = quantize(worker_amount + job.service_fee)
        self._check_amount(total)

        customer_id = await self.gateway.ensure_customer(actor_id, payer_email)
        previous = await self.ledger.list_payments(job_id=job_id, type=PaymentKind.worker_payment)
        charge: ChargeResult = await self.gateway.create_charge(
            customer_id,
            payment_method_id,
            to_cents(total),
            {
                "jobId": str(job_id),
                "posterId": job.poster_id,
                "workerId": job.worker_id,
                "hours": str(hours),
                "paymentType": PaymentKind.worker_payment.value,
            },
            ChargeOptions(
                capture_now=True,
                destination_account_id=account.stripe_connect_account_id,
                application_fee_cents=to_cents(job.service_fee),
                idempotency_key=f"job-{job_id}-settle-{len(previous)}-{payment_method_id}",
            ),
        )
        payment = await self._record_payment(
            user_id=actor_id,
            worker_id=job.worker_id,
            job_id=job_id,
            amount=total,
            service_fee=job.service_fee,
            type=PaymentKind.worker_payment,
            status=charge.payment_status,
            transaction_id=charge.external_id,
            stripe_customer_id=customer_id,
            stripe_connect_account_id=account.stripe_connect_account_id,
            description=f"Hourly settlement for job: {job.title} ({hours}h)",
        )

        earning, _ = await self._ensure_earning(job)
        earning = await self.ledger.reprice_earning(earning.id, total, job.service_fee) or earning
        await self.ledger.update_job(
            job_id,
            total_amount=total,
            payment_status=_job_payment_status_for(payment.status),
        )
        if payment.is_captured:
            await self.mark_split_payment_settled(job, payment)
        log_payment_event(
            logger,
            "hourly_settled",
            job=job_id,
            payment=payment.id,
            intent=charge.external_id,
            status=payment.status.value,
            hours=hours,
            total=total,
        )
        return payment

    async def mark_split_payment_settled(self, job: Job, payment: Payment) -> Optional[Earning]:
        """Mark the worker paid once a split charge has been captured."""
        if not job.worker_id:
            return None
        earning, _ = await self._ensure_earning(job)
        paid, _ = await self.ledger.transition_earning(
            earning.id,
            [EarningStatus.pending, EarningStatus.failed],
            EarningStatus.paid,
            transaction_id=payment.transaction_id,
            date_paid=_utc_now(),
        )
        if paid is None:
            return earning
        await self.ledger.transition_job(job.id, [JobStatus.completed], JobStatus.paid)
        await self.notify(
            job.worker_id,
            NotificationType.payment_received,
            "Payment Received",
            f'You received ${paid.net_amount} for "{job.title}".',
            job_id=job.id,
        )
        await self.notify(
            job.poster_id,
            NotificationType.payment_sent,
            "Payment Sent to Worker",
            f'Payment of ${paid.net_amount} for "{job.title}" has been sent to the worker.',
            job_id=job.id,
        )
        return paid

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_job(self, job_id: int, actor_id: str, with_refund: bool = False) -> CancellationResult:
        """Cancel a job, optionally refunding the poster first.

        A refund failure is logged and reported but the job is still removed.
        """
        job = await self._get_poster_job(job_id, actor_id, "cancel this job")
        earnings = await self.ledger.list_earnings(job_id=job_id)
        if any(e.status == EarningStatus.paid for e in earnings):
            raise ValidationError("Cannot cancel a job after the worker has been paid")
        if any(e.status == EarningStatus.processing for e in earnings):
            raise ValidationError("Cannot cancel a job while a payout is in progress")

        refund_payment = None
        if with_refund:
            refund_payment = await self._refund_job(job)

        for earning in earnings:
            if earning.status in (EarningStatus.pending, EarningStatus.failed):
                await self.ledger.transition_earning(
                    earning.id, [earning.status], EarningStatus.cancelled
                )

        await self.ledger.delete_job(job_id)
        logger.info("Job cancelled | id=%s | poster=%s | refund=%s", job_id, actor_id, with_refund)

        if job.worker_id:
            await self.notify(
                job.worker_id,
                NotificationType.job_cancelled,
                "Job Cancelled",
                f'"{job.title}" has been cancelled by the poster.',
                job_id=job_id,
            )

        refund_processed = refund_payment is not None and refund_payment.status != PaymentStatus.failed
        return CancellationResult(
            success=True,
            message="Job successfully canceled",
            refund_processed=refund_processed,
            refund=refund_payment,
        )

    async def _refund_job(self, job: Job) -> Optional[Payment]:
        payments = [
            p for p in await self.ledger.list_payments(job_id=job.id) if p.type in REFUNDABLE_KINDS
        ]
        if not payments:
            logger.info("No payment to refund for job %s", job.id)
            return None
        original = payments[0]
        if not original.transaction_id or not original.is_captured:
            logger.info("Payment %s for job %s is not refundable (status=%s)", original.id, job.id, original.status.value)
            return None

        try:
            refund = await self.gateway.refund(original.transaction_id, idempotency_key=f"refund-{original.id}")
        except (GatewayRejected, GatewayError) as e:
            logger.warning("Refund failed for job %s payment %s: %s", job.id, original.id, e.message)
            return None

        refund_status = PaymentStatus.succeeded if refund.succeeded else PaymentStatus.failed
        refund_payment = await self._record_payment(
            user_id=original.user_id,
            job_id=job.id,
            amount=original.amount,
            service_fee=original.service_fee,
            type=PaymentKind.refund,
            status=refund_status,
            transaction_id=refund.external_id,
            stripe_customer_id=original.stripe_customer_id,
            description=f"Refund for job: {job.title}",
        )
        if refund.succeeded:
            await self.ledger.transition_payment(
                original.id, [original.status], PaymentStatus.refunded
            )
            await self.notify(
                original.user_id,
                NotificationType.refund_processed,
                "Refund Processed",
                f'Your payment for "{job.title}" has been refunded.',
                job_id=job.id,
            )
        log_payment_event(
            logger,
            "job_refunded",
            job=job.id,
            payment=original.id,
            refund=refund.external_id,
            status=refund.status,
        )
        return refund_payment

    # ------------------------------------------------------------------
    # Earnings
    # ------------------------------------------------------------------

    async def earnings_summary(self, worker_id: str) -> EarningsSummary:
        earnings = await self.ledger.list_earnings(worker_id=worker_id)
        summary = EarningsSummary(earnings=earnings)
        for earning in earnings:
            if earning.status in (EarningStatus.pending, EarningStatus.processing):
                summary.total_pending += earning.net_amount
            elif earning.status == EarningStatus.paid:
                summary.total_paid += earning.net_amount
            if earning.status != EarningStatus.cancelled:
                summary.total_net += earning.net_amount
        return summary

    async def _get_poster_earning(self, earning_id: int, actor_id: str) -> tuple[Earning, Job]:
        earning = await self.ledger.get_earning(earning_id)
        if earning is None:
            raise NotFoundError("Earning not found")
        job = await self.ledger.get_job(earning.job_id)
        if job is None:
            raise NotFoundError("Job not found")
        if job.poster_id != actor_id:
            raise AuthorizationError("Only the job poster can manage this earning")
        return earning, job

    async def payout_earning(self, earning_id: int, actor_id: str) -> Earning:
        """Poster-triggered payout, used to retry a failed or deferred transfer."""
        earning, job = await self._get_poster_earning(earning_id, actor_id)
        if earning.status not in (EarningStatus.pending, EarningStatus.failed):
            raise ValidationError(f"Earning is already {earning.status.value}")
        account = await self.ledger.get_account(earning.worker_id)
        if account is None or not account.can_receive_payouts:
            raise ValidationError("Worker has not set up a payment account")
        source = await self._captured_job_payment(job.id)
        if source is None:
            raise ValidationError("Job has no captured payment to pay out from")
        return await self._transfer_earning(job, earning, account, source, raise_on_failure=True)

    async def cancel_earning(self, earning_id: int, actor_id: str) -> Earning:
        earning, _ = await self._get_poster_earning(earning_id, actor_id)
        cancelled, error = await self.ledger.transition_earning(
            earning_id, [EarningStatus.pending, EarningStatus.failed], EarningStatus.cancelled
        )
        if cancelled is None:
            raise ValidationError(f"Earning is already {earning.status.value}")
        return cancelled

    # ------------------------------------------------------------------
    # Payments history
    # ------------------------------------------------------------------

    async def list_user_payments(self, user_id: str) -> list[Payment]:
        return await self.ledger.list_payments(participant_id=user_id)

    async def list_job_payments(self, job_id: int, actor_id: str) -> list[Payment]:
        job = await self.get_job(job_id)
        if not job.is_participant(actor_id):
            raise AuthorizationError("Only job participants can view its payments")
        return await self.ledger.list_payments(job_id=job_id)

    # ------------------------------------------------------------------
    # Connected accounts
    # ------------------------------------------------------------------

    async def setup_connected_account(self, user_id: str, email: Optional[str] = None) -> AccountStatusView:
        account_id = await self.gateway.ensure_connected_account(user_id, email)
        onboarding_url = await self.gateway.create_onboarding_link(account_id)
        account = await self.ledger.get_account(user_id)
        return AccountStatusView(
            exists=True,
            account_id=account_id,
            account_status=(account.connect_account_status if account else None) or AccountStatus.pending,
            onboarding_url=onboarding_url,
        )

    async def connected_account_status(self, user_id: str) -> AccountStatusView:
        account = await self.ledger.get_account(user_id)
        if account is None or not account.stripe_connect_account_id:
            return AccountStatusView(exists=False)

        info = await self.gateway.get_connected_account_status(account.stripe_connect_account_id)
        status = await self.record_account_status(account, info)
        onboarding_url = None
        if status != AccountStatus.active:
            onboarding_url = await self.gateway.create_onboarding_link(account.stripe_connect_account_id)
        return AccountStatusView(
            exists=True,
            account_id=account.stripe_connect_account_id,
            account_status=status,
            charges_enabled=info.charges_enabled,
            payouts_enabled=info.payouts_enabled,
            requirements_due=list(info.requirements_due),
            onboarding_url=onboarding_url,
        )

    async def record_account_status(self, account: PaymentAccount, info: ConnectedAccountInfo) -> AccountStatus:
        """Persist a recomputed account status, notifying only on meaningful transitions."""
        status = info.status
        previous = account.connect_account_status
        if status == previous:
            return status

        await self.ledger.save_account(account.user_id, connect_account_status=status)
        logger.info(
            "Connected account status | user=%s | account=%s | %s -> %s",
            account.user_id,
            info.account_id,
            previous.value if previous else None,
            status.value,
        )
        if status == AccountStatus.active:
            await self.notify(
                account.user_id,
                NotificationType.account_active,
                "Payment Account Active",
                "Your payment account is verified. You can now receive payouts.",
            )
        elif info.requirements_due:
            await self.notify(
                account.user_id,
                NotificationType.account_action_required,
                "Payment Account Needs Attention",
                "More information is required to enable payouts on your account.",
                requirements_due=list(info.requirements_due),
            )
        return status
