"""Event reconciler.

Aligns the ledger with asynchronous processor events. Every handler keys
off the event's own transaction id, never off "latest event wins" across
ids, and every handler is a no-op when the same event arrives twice.

When the ledger has no row for a transaction the processor reports, the
row is created from event metadata: the processor is the source of truth
when the synchronous request path died before persisting.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Optional

from app.errors import DuplicateRecordError, ReconciliationConflict
from app.gateway.base import ConnectedAccountInfo, PaymentGateway
from app.ledger.models import (
    Earning,
    EarningStatus,
    Job,
    JobPaymentStatus,
    JobStatus,
    Payment,
    PaymentKind,
    PaymentStatus,
    can_transition_earning,
    can_transition_payment,
)
from app.ledger.store import LedgerStore
from app.logging_config import log_payment_event
from app.notifier import NotificationType
from app.payments.orchestrator import JobPaymentOrchestrator

from .events import GatewayEvent, GatewayEventKind, parse_event

logger = logging.getLogger("fixer.reconciler")


class ReconcileOutcome(str, Enum):
    applied = "applied"  # Ledger state changed
    created = "created"  # Missing record created from event metadata
    duplicate = "duplicate"  # Already applied; nothing to do
    ignored = "ignored"  # Event kind not reconciled
    conflict = "conflict"  # References records we do not know


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Job payment statuses that a failed charge may overwrite
_PAYABLE_JOB_STATUSES = (JobPaymentStatus.unpaid, JobPaymentStatus.pending, JobPaymentStatus.failed)


class EventReconciler:
    """Reconciles processor webhook events against the ledger."""

    def __init__(
        self,
        ledger: LedgerStore,
        gateway: PaymentGateway,
        orchestrator: JobPaymentOrchestrator,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.orchestrator = orchestrator
        self._handlers: dict[GatewayEventKind, Callable[[GatewayEvent], Awaitable[ReconcileOutcome]]] = {
            GatewayEventKind.payment_succeeded: self._on_payment_succeeded,
            GatewayEventKind.payment_failed: self._on_payment_failed,
            GatewayEventKind.payment_canceled: self._on_payment_canceled,
            GatewayEventKind.charge_refunded: self._on_charge_refunded,
            GatewayEventKind.transfer_created: self._on_transfer_paid,
            GatewayEventKind.transfer_paid: self._on_transfer_paid,
            GatewayEventKind.transfer_failed: self._on_transfer_failed,
            GatewayEventKind.transfer_reversed: self._on_transfer_failed,
            GatewayEventKind.account_updated: self._on_account_updated,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def verify(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        """Check the webhook signature and parse the event.

        Raises WebhookSignatureError; nothing in the body is trusted before this.
        """
        return parse_event(self.gateway.verify_webhook(payload, signature))

    async def handle(self, payload: bytes, signature: Optional[str]) -> ReconcileOutcome:
        return await self.reconcile(self.verify(payload, signature))

    async def reconcile(self, event: GatewayEvent) -> ReconcileOutcome:
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.info("Webhook %s (%s) acknowledged without processing", event.id, event.type)
            return ReconcileOutcome.ignored

        try:
            outcome = await handler(event)
        except ReconciliationConflict as e:
            logger.warning("Reconciliation conflict for %s (%s): %s", event.id, event.type, e.message)
            return ReconcileOutcome.conflict

        log_payment_event(
            logger,
            "webhook_reconciled",
            event_id=event.id,
            type=event.type,
            object=event.object_id,
            outcome=outcome.value,
        )
        return outcome

    # ------------------------------------------------------------------
    # Payment intents
    # ------------------------------------------------------------------

    async def _on_payment_succeeded(self, event: GatewayEvent) -> ReconcileOutcome:
        payment, outcome = await self._apply_payment_status(event, PaymentStatus.succeeded)
        if outcome == ReconcileOutcome.duplicate or payment.job_id is None:
            return outcome

        job = await self.ledger.get_job(payment.job_id)
        if job is None:
            logger.info("Job %s for payment %s no longer exists", payment.job_id, payment.id)
            return outcome

        job = await self.ledger.update_job(job.id, payment_status=JobPaymentStatus.paid) or job
        if payment.type == PaymentKind.worker_payment:
            await self.orchestrator.mark_split_payment_settled(job, payment)
        elif payment.type == PaymentKind.job_payment:
            await self.orchestrator.settle_completed_job(job)
        return outcome

    async def _on_payment_failed(self, event: GatewayEvent) -> ReconcileOutcome:
        return await self._on_payment_unsuccessful(event, PaymentStatus.failed)

    async def _on_payment_canceled(self, event: GatewayEvent) -> ReconcileOutcome:
        return await self._on_payment_unsuccessful(event, PaymentStatus.canceled)

    async def _on_payment_unsuccessful(self, event: GatewayEvent, status: PaymentStatus) -> ReconcileOutcome:
        payment, outcome = await self._apply_payment_status(event, status)
        if outcome == ReconcileOutcome.duplicate or payment.job_id is None:
            return outcome

        job = await self.ledger.get_job(payment.job_id)
        if job is None:
            return outcome
        # Leave the job payable again, unless another charge already cleared
        if job.payment_status in _PAYABLE_JOB_STATUSES:
            await self.ledger.update_job(job.id, payment_status=JobPaymentStatus.failed)

        error = (event.object.get("last_payment_error") or {}).get("message")
        await self.orchestrator.notify(
            payment.user_id,
            NotificationType.payment_failed,
            "Payment Failed",
            f'Your payment for "{job.title}" failed'
            + (f": {error}" if error else ".")
            + " You can retry the payment from the job page.",
            job_id=job.id,
        )
        return outcome

    async def _apply_payment_status(
        self, event: GatewayEvent, status: PaymentStatus
    ) -> tuple[Optional[Payment], ReconcileOutcome]:
        """Move the payment for this intent to ``status``, creating it if missing."""
        intent_id = event.object_id
        if not intent_id:
            raise ReconciliationConflict("Payment event has no object id")

        payment = await self.ledger.get_payment_by_transaction(intent_id)
        if payment is None:
            try:
                return await self._create_payment_from_event(event, status), ReconcileOutcome.created
            except DuplicateRecordError:
                # The request path persisted it while we were looking
                payment = await self.ledger.get_payment_by_transaction(intent_id)
                if payment is None:
                    raise

        if payment.status == status or not can_transition_payment(payment.status, status):
            logger.info(
                "Payment %s already %s; ignoring %s",
                payment.id,
                payment.status.value,
                event.type,
            )
            return payment, ReconcileOutcome.duplicate

        updated, _ = await self.ledger.transition_payment(payment.id, [payment.status], status)
        if updated is None:
            return payment, ReconcileOutcome.duplicate
        return updated, ReconcileOutcome.applied

    async def _create_payment_from_event(self, event: GatewayEvent, status: PaymentStatus) -> Payment:
        job_id = event.job_id
        payer_id = event.payer_id
        if job_id is None or not payer_id:
            raise ReconciliationConflict(f"Unknown payment {event.object_id} without job metadata")
        job = await self.ledger.get_job(job_id)
        if job is None:
            raise ReconciliationConflict(f"Payment {event.object_id} references unknown job {job_id}")

        total = event.amount() or Decimal("0")
        if event.payment_type == PaymentKind.worker_payment.value:
            kind = PaymentKind.worker_payment
            amount = total
            service_fee = event.amount("application_fee_amount") or job.service_fee
        else:
            kind = PaymentKind.job_payment
            amount = event.metadata_decimal("paymentAmount") or job.payment_amount
            service_fee = event.metadata_decimal("serviceFee") or job.service_fee

        transfer_data = event.object.get("transfer_data") or {}
        payment = await self.ledger.create_payment(
            user_id=payer_id,
            worker_id=event.worker_id,
            job_id=job_id,
            amount=amount,
            service_fee=service_fee,
            type=kind,
            status=status,
            transaction_id=event.object_id,
            stripe_customer_id=event.object.get("customer"),
            stripe_connect_account_id=transfer_data.get("destination"),
            description=f"Payment for job: {job.title}",
        )
        logger.info("Recorded missing payment %s for intent %s", payment.id, event.object_id)
        return payment

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def _on_charge_refunded(self, event: GatewayEvent) -> ReconcileOutcome:
        charge = event.object
        amount = charge.get("amount") or 0
        refunded = charge.get("amount_refunded") or 0
        status = PaymentStatus.refunded if refunded >= amount else PaymentStatus.partial_refunded

        payment = None
        for key in (charge.get("payment_intent"), event.object_id):
            if key:
                payment = await self.ledger.get_payment_by_transaction(key)
                if payment is not None:
                    break
        if payment is None:
            raise ReconciliationConflict(f"Refund for unknown charge {event.object_id}")

        if payment.status == status or not can_transition_payment(payment.status, status):
            return ReconcileOutcome.duplicate
        updated, _ = await self.ledger.transition_payment(payment.id, [payment.status], status)
        if updated is None:
            return ReconcileOutcome.duplicate

        if payment.job_id is not None:
            job_status = (
                JobPaymentStatus.refunded
                if status == PaymentStatus.refunded
                else JobPaymentStatus.partial_refunded
            )
            job = await self.ledger.update_job(payment.job_id, payment_status=job_status)
            if job is None:
                logger.info("Refunded payment %s belongs to deleted job %s", payment.id, payment.job_id)

        await self.orchestrator.notify(
            payment.user_id,
            NotificationType.refund_processed,
            "Refund Processed",
            f"A refund of ${event.amount('amount_refunded')} has been issued to your payment method.",
            job_id=payment.job_id,
        )
        return ReconcileOutcome.applied

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def _find_transfer_earning(self, event: GatewayEvent) -> Optional[Earning]:
        earning = await self.ledger.get_earning_by_transaction(event.object_id)
        if earning is None and event.earning_id is not None:
            earning = await self.ledger.get_earning(event.earning_id)
        if earning is None and event.job_id is not None and event.worker_id:
            earning = await self.ledger.get_earning_for_job(event.job_id, event.worker_id)
        return earning

    async def _on_transfer_paid(self, event: GatewayEvent) -> ReconcileOutcome:
        transfer_id = event.object_id
        if not transfer_id:
            raise ReconciliationConflict("Transfer event has no object id")

        payout = await self.ledger.get_payment_by_transaction(transfer_id)
        if payout is not None and payout.status == PaymentStatus.failed:
            logger.info("Transfer %s already failed; ignoring stale %s", transfer_id, event.type)
            return ReconcileOutcome.duplicate

        earning = await self._find_transfer_earning(event)
        if earning is None:
            earning = await self._create_earning_from_transfer(event)
            outcome = ReconcileOutcome.created
        elif earning.status == EarningStatus.paid:
            return ReconcileOutcome.duplicate
        elif not can_transition_earning(earning.status, EarningStatus.paid):
            logger.info("Earning %s is %s; ignoring %s", earning.id, earning.status.value, event.type)
            return ReconcileOutcome.duplicate
        else:
            updated, _ = await self.ledger.transition_earning(
                earning.id,
                [earning.status],
                EarningStatus.paid,
                transaction_id=transfer_id,
                date_paid=_utc_now(),
            )
            if updated is None:
                return ReconcileOutcome.duplicate
            earning = updated
            outcome = ReconcileOutcome.applied

        job = await self.ledger.get_job(earning.job_id)
        await self._ensure_payout_payment(event, earning, job)
        if job is not None:
            await self.ledger.transition_job(job.id, [JobStatus.completed], JobStatus.paid)
        return outcome

    async def _create_earning_from_transfer(self, event: GatewayEvent) -> Earning:
        job_id = event.job_id
        worker_id = event.worker_id
        if job_id is None or not worker_id:
            raise ReconciliationConflict(f"Transfer {event.object_id} has no job/worker metadata")
        job = await self.ledger.get_job(job_id)
        if job is None:
            raise ReconciliationConflict(f"Transfer {event.object_id} references unknown job {job_id}")

        try:
            earning = await self.ledger.create_earning(
                worker_id=worker_id,
                job_id=job_id,
                amount=job.payment_amount,
                service_fee=job.service_fee,
                status=EarningStatus.paid,
                transaction_id=event.object_id,
                date_paid=_utc_now(),
            )
        except DuplicateRecordError:
            existing = await self.ledger.get_earning_for_job(job_id, worker_id)
            if existing is None:
                raise
            return existing
        logger.info("Recorded missing earning %s for transfer %s", earning.id, event.object_id)
        return earning

    async def _ensure_payout_payment(self, event: GatewayEvent, earning: Earning, job: Optional[Job]) -> None:
        if await self.ledger.get_payment_by_transaction(event.object_id) is not None:
            return
        try:
            await self.ledger.create_payment(
                user_id=job.poster_id if job else earning.worker_id,
                worker_id=earning.worker_id,
                job_id=earning.job_id,
                amount=event.amount() or earning.net_amount,
                type=PaymentKind.payout,
                status=PaymentStatus.completed,
                transaction_id=event.object_id,
                stripe_connect_account_id=event.object.get("destination"),
                description=f"Payout for job #{earning.job_id}",
            )
        except DuplicateRecordError:
            logger.info("Payout payment for transfer %s recorded concurrently", event.object_id)

    async def _on_transfer_failed(self, event: GatewayEvent) -> ReconcileOutcome:
        earning = await self._find_transfer_earning(event)
        if earning is None:
            raise ReconciliationConflict(f"Failed transfer {event.object_id} matches no earning")
        # An earning carries the id of the transfer that paid it, set only on payment
        if earning.transaction_id and (
            earning.transaction_id != event.object_id or earning.status != EarningStatus.paid
        ):
            logger.info(
                "Ignoring stale %s for transfer %s: earning %s is %s via %s",
                event.type,
                event.object_id,
                earning.id,
                earning.status.value,
                earning.transaction_id,
            )
            return ReconcileOutcome.duplicate
        if earning.status == EarningStatus.failed or not can_transition_earning(
            earning.status, EarningStatus.failed
        ):
            return ReconcileOutcome.duplicate

        updated, _ = await self.ledger.transition_earning(earning.id, [earning.status], EarningStatus.failed)
        if updated is None:
            return ReconcileOutcome.duplicate

        payout = await self.ledger.get_payment_by_transaction(event.object_id)
        if payout is not None and can_transition_payment(payout.status, PaymentStatus.failed):
            await self.ledger.transition_payment(payout.id, [payout.status], PaymentStatus.failed)

        job = await self.ledger.get_job(earning.job_id)
        if job is not None:
            await self.ledger.transition_job(job.id, [JobStatus.paid], JobStatus.completed)
            message = f'The payout for "{job.title}" failed. Our team will resolve it.'
            await self.orchestrator.notify(
                job.poster_id, NotificationType.payment_issue, "Payment Transfer Failed", message, job_id=job.id
            )
        else:
            message = f"The payout for job #{earning.job_id} failed. Our team will resolve it."
        await self.orchestrator.notify(
            earning.worker_id,
            NotificationType.payment_issue,
            "Payment Transfer Failed",
            message,
            job_id=earning.job_id,
        )
        log_payment_event(logger, "payout_failed", earning=earning.id, transfer=event.object_id)
        return ReconcileOutcome.applied

    # ------------------------------------------------------------------
    # Connected accounts
    # ------------------------------------------------------------------

    async def _on_account_updated(self, event: GatewayEvent) -> ReconcileOutcome:
        account_id = event.object_id
        if not account_id:
            raise ReconciliationConflict("Account event has no object id")

        account = await self.ledger.get_account_by_connect_id(account_id)
        if account is None:
            user_id = event.metadata.get("userId")
            if not user_id:
                raise ReconciliationConflict(f"Account {account_id} is not linked to a user")
            account = await self.ledger.save_account(user_id, stripe_connect_account_id=account_id)

        requirements = event.object.get("requirements") or {}
        info = ConnectedAccountInfo(
            account_id=account_id,
            charges_enabled=bool(event.object.get("charges_enabled")),
            payouts_enabled=bool(event.object.get("payouts_enabled")),
            details_submitted=bool(event.object.get("details_submitted")),
            requirements_due=tuple(requirements.get("currently_due") or ()),
            disabled_reason=requirements.get("disabled_reason"),
        )
        previous = account.connect_account_status
        status = await self.orchestrator.record_account_status(account, info)
        return ReconcileOutcome.duplicate if status == previous else ReconcileOutcome.applied
