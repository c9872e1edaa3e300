"""Supabase-backed ledger store.

The Supabase client is synchronous, so every query runs in a worker thread
via ``asyncio.to_thread``. Conditional updates (``.eq("status", ...)``)
give optimistic locking for status transitions, and unique indexes in the
migration reject duplicate transaction ids and duplicate earnings.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional

from supabase import Client

from app.errors import DuplicateRecordError

from .models import (
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
from .store import CONFLICT, NOT_FOUND

logger = logging.getLogger("fixer.ledger.supabase")

# =============================================================================
# Table names (keep in sync with SQL migrations)
# =============================================================================

JOBS_TABLE = "jobs"
TASKS_TABLE = "tasks"
JOB_APPLICATIONS_TABLE = "job_applications"
PAYMENTS_TABLE = "payments"
EARNINGS_TABLE = "earnings"
PAYMENT_ACCOUNTS_TABLE = "payment_accounts"

UNIQUE_VIOLATION = "23505"


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)  # Supabase stores DECIMAL as string
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _serialize_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: _serialize(value) for key, value in fields.items()}


def _is_unique_violation(exc: Exception) -> bool:
    code = getattr(exc, "code", None)
    return code == UNIQUE_VIOLATION or "duplicate key" in str(exc).lower()


def _first(result) -> Optional[dict]:
    return result.data[0] if result.data else None


class SupabaseLedgerStore:
    """Ledger store over a Supabase ``Client``."""

    def __init__(self, db: Client):
        self._db = db

    async def _run(self, query):
        return await asyncio.to_thread(query.execute)

    async def _insert(self, table: str, data: dict, duplicate_message: str) -> dict:
        try:
            result = await self._run(self._db.table(table).insert(_serialize_fields(data)))
        except Exception as e:
            if _is_unique_violation(e):
                raise DuplicateRecordError(duplicate_message) from e
            raise
        row = _first(result)
        if row is None:
            raise RuntimeError(f"Insert into {table} returned no row")
        return row

    async def _conditional_update(
        self,
        table: str,
        record_id: int,
        expected: Iterable[Enum],
        fields: dict[str, Any],
    ) -> tuple[Optional[dict], Optional[str]]:
        expected_values = [s.value for s in expected]
        try:
            result = await self._run(
                self._db.table(table)
                .update(_serialize_fields(fields))
                .eq("id", record_id)
                .in_("status", expected_values)
            )
        except Exception as e:
            if _is_unique_violation(e):
                raise DuplicateRecordError(f"Update of {table} {record_id} violates a unique key") from e
            raise
        row = _first(result)
        if row is not None:
            return row, None

        current = _first(await self._run(self._db.table(table).select("status").eq("id", record_id)))
        if current is None:
            return None, NOT_FOUND
        logger.warning(
            "Concurrent modification on %s %s: expected status in %s, found '%s'",
            table,
            record_id,
            expected_values,
            current["status"],
        )
        return None, CONFLICT

    async def _select_one(self, table: str, column: str, value: Any) -> Optional[dict]:
        result = await self._run(self._db.table(table).select("*").eq(column, value).limit(1))
        return _first(result)

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
        data = {
            "poster_id": poster_id,
            "title": title,
            "description": description,
            "category": category,
            "payment_type": payment_type,
            "payment_amount": quantize(payment_amount),
            "service_fee": quantize(service_fee),
            "total_amount": quantize(total_amount),
            "status": JobStatus.open,
            "payment_status": "unpaid",
            "date_needed": date_needed,
        }
        row = await self._insert(JOBS_TABLE, data, "Job already exists")
        return Job(**row)

    async def get_job(self, job_id: int) -> Optional[Job]:
        row = await self._select_one(JOBS_TABLE, "id", job_id)
        return Job(**row) if row else None

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
        query = self._db.table(JOBS_TABLE).select("*")
        if status is not None:
            query = query.eq("status", status.value)
        if poster_id is not None:
            query = query.eq("poster_id", poster_id)
        if worker_id is not None:
            query = query.eq("worker_id", worker_id)
        if category is not None:
            query = query.eq("category", category)
        query = query.order("id", desc=True).range(offset, offset + limit - 1)
        result = await self._run(query)
        return [Job(**row) for row in result.data or []]

    async def update_job(self, job_id: int, **fields: Any) -> Optional[Job]:
        result = await self._run(
            self._db.table(JOBS_TABLE).update(_serialize_fields(fields)).eq("id", job_id)
        )
        row = _first(result)
        return Job(**row) if row else None

    async def transition_job(
        self,
        job_id: int,
        expected: Iterable[JobStatus],
        new_status: JobStatus,
        **fields: Any,
    ) -> tuple[Optional[Job], Optional[str]]:
        row, error = await self._conditional_update(
            JOBS_TABLE, job_id, expected, {"status": new_status, **fields}
        )
        return (Job(**row), None) if row else (None, error)

    async def delete_job(self, job_id: int) -> bool:
        await self._run(self._db.table(TASKS_TABLE).delete().eq("job_id", job_id))
        await self._run(self._db.table(JOB_APPLICATIONS_TABLE).delete().eq("job_id", job_id))
        result = await self._run(self._db.table(JOBS_TABLE).delete().eq("id", job_id))
        return bool(result.data)

    # === Tasks ===

    async def create_task(
        self, job_id: int, description: str, bonus_amount: Optional[Decimal] = None
    ) -> Task:
        count_result = await self._run(
            self._db.table(TASKS_TABLE).select("id", count="exact").eq("job_id", job_id)
        )
        data = {
            "job_id": job_id,
            "description": description,
            "position": count_result.count or 0,
            "is_completed": False,
            "bonus_amount": bonus_amount,
        }
        row = await self._insert(TASKS_TABLE, data, f"Task position conflict on job {job_id}")
        return Task(**row)

    async def get_task(self, task_id: int) -> Optional[Task]:
        row = await self._select_one(TASKS_TABLE, "id", task_id)
        return Task(**row) if row else None

    async def list_tasks(self, job_id: int) -> list[Task]:
        result = await self._run(
            self._db.table(TASKS_TABLE).select("*").eq("job_id", job_id).order("position")
        )
        return [Task(**row) for row in result.data or []]

    async def update_task(self, task_id: int, **fields: Any) -> Optional[Task]:
        result = await self._run(
            self._db.table(TASKS_TABLE).update(_serialize_fields(fields)).eq("id", task_id)
        )
        row = _first(result)
        return Task(**row) if row else None

    async def delete_task(self, task_id: int) -> bool:
        task = await self.get_task(task_id)
        if task is None:
            return False
        await self._run(self._db.table(TASKS_TABLE).delete().eq("id", task_id))
        # Shift later tasks down one at a time, lowest first, so positions never collide
        for other in await self.list_tasks(task.job_id):
            if other.position > task.position:
                await self.update_task(other.id, position=other.position - 1)
        return True

    async def set_task_positions(self, job_id: int, ordered_ids: list[int]) -> list[Task]:
        # Park every task on a negative slot first to keep (job_id, position) unique
        for index, task_id in enumerate(ordered_ids):
            await self.update_task(task_id, position=-(index + 1))
        for index, task_id in enumerate(ordered_ids):
            await self.update_task(task_id, position=index)
        return await self.list_tasks(job_id)

    # === Applications ===

    async def create_application(self, job_id: int, worker_id: str, message: str = "") -> JobApplication:
        data = {
            "job_id": job_id,
            "worker_id": worker_id,
            "message": message,
            "status": ApplicationStatus.pending,
        }
        row = await self._insert(
            JOB_APPLICATIONS_TABLE, data, f"Worker {worker_id} already applied to job {job_id}"
        )
        return JobApplication(**row)

    async def get_application(self, application_id: int) -> Optional[JobApplication]:
        row = await self._select_one(JOB_APPLICATIONS_TABLE, "id", application_id)
        return JobApplication(**row) if row else None

    async def list_applications(
        self, *, job_id: Optional[int] = None, worker_id: Optional[str] = None
    ) -> list[JobApplication]:
        query = self._db.table(JOB_APPLICATIONS_TABLE).select("*")
        if job_id is not None:
            query = query.eq("job_id", job_id)
        if worker_id is not None:
            query = query.eq("worker_id", worker_id)
        result = await self._run(query.order("id", desc=True))
        return [JobApplication(**row) for row in result.data or []]

    async def transition_application(
        self,
        application_id: int,
        expected: Iterable[ApplicationStatus],
        new_status: ApplicationStatus,
    ) -> tuple[Optional[JobApplication], Optional[str]]:
        row, error = await self._conditional_update(
            JOB_APPLICATIONS_TABLE, application_id, expected, {"status": new_status}
        )
        return (JobApplication(**row), None) if row else (None, error)

    # === Payments ===

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
        data = {
            "user_id": user_id,
            "worker_id": worker_id,
            "job_id": job_id,
            "amount": quantize(amount),
            "service_fee": quantize(service_fee),
            "type": type,
            "status": status,
            "transaction_id": transaction_id,
            "stripe_customer_id": stripe_customer_id,
            "stripe_connect_account_id": stripe_connect_account_id,
            "description": description,
        }
        row = await self._insert(
            PAYMENTS_TABLE, data, f"Payment with transaction {transaction_id} already exists"
        )
        return Payment(**row)

    async def get_payment(self, payment_id: int) -> Optional[Payment]:
        row = await self._select_one(PAYMENTS_TABLE, "id", payment_id)
        return Payment(**row) if row else None

    async def get_payment_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        row = await self._select_one(PAYMENTS_TABLE, "transaction_id", transaction_id)
        return Payment(**row) if row else None

    async def list_payments(
        self,
        *,
        job_id: Optional[int] = None,
        participant_id: Optional[str] = None,
        type: Optional[PaymentKind] = None,
    ) -> list[Payment]:
        query = self._db.table(PAYMENTS_TABLE).select("*")
        if job_id is not None:
            query = query.eq("job_id", job_id)
        if participant_id is not None:
            query = query.or_(f"user_id.eq.{participant_id},worker_id.eq.{participant_id}")
        if type is not None:
            query = query.eq("type", type.value)
        result = await self._run(query.order("id", desc=True))
        return [Payment(**row) for row in result.data or []]

    async def transition_payment(
        self,
        payment_id: int,
        expected: Iterable[PaymentStatus],
        new_status: PaymentStatus,
        **fields: Any,
    ) -> tuple[Optional[Payment], Optional[str]]:
        row, error = await self._conditional_update(
            PAYMENTS_TABLE, payment_id, expected, {"status": new_status, **fields}
        )
        return (Payment(**row), None) if row else (None, error)

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
        data = {
            "worker_id": worker_id,
            "job_id": job_id,
            "amount": quantize(amount),
            "service_fee": quantize(service_fee),
            "net_amount": compute_net(amount, service_fee),
            "status": status,
            "transaction_id": transaction_id,
            "date_paid": date_paid,
        }
        row = await self._insert(
            EARNINGS_TABLE, data, f"Earning for job {job_id} and worker {worker_id} already exists"
        )
        return Earning(**row)

    async def get_earning(self, earning_id: int) -> Optional[Earning]:
        row = await self._select_one(EARNINGS_TABLE, "id", earning_id)
        return Earning(**row) if row else None

    async def get_earning_for_job(self, job_id: int, worker_id: str) -> Optional[Earning]:
        result = await self._run(
            self._db.table(EARNINGS_TABLE)
            .select("*")
            .eq("job_id", job_id)
            .eq("worker_id", worker_id)
            .limit(1)
        )
        row = _first(result)
        return Earning(**row) if row else None

    async def get_earning_by_transaction(self, transaction_id: str) -> Optional[Earning]:
        row = await self._select_one(EARNINGS_TABLE, "transaction_id", transaction_id)
        return Earning(**row) if row else None

    async def list_earnings(
        self, *, worker_id: Optional[str] = None, job_id: Optional[int] = None
    ) -> list[Earning]:
        query = self._db.table(EARNINGS_TABLE).select("*")
        if worker_id is not None:
            query = query.eq("worker_id", worker_id)
        if job_id is not None:
            query = query.eq("job_id", job_id)
        result = await self._run(query.order("id", desc=True))
        return [Earning(**row) for row in result.data or []]

    async def transition_earning(
        self,
        earning_id: int,
        expected: Iterable[EarningStatus],
        new_status: EarningStatus,
        **fields: Any,
    ) -> tuple[Optional[Earning], Optional[str]]:
        row, error = await self._conditional_update(
            EARNINGS_TABLE, earning_id, expected, {"status": new_status, **fields}
        )
        return (Earning(**row), None) if row else (None, error)

    async def reprice_earning(
        self, earning_id: int, amount: Decimal, service_fee: Decimal
    ) -> Optional[Earning]:
        fields = {
            "amount": quantize(amount),
            "service_fee": quantize(service_fee),
            "net_amount": compute_net(amount, service_fee),
        }
        result = await self._run(
            self._db.table(EARNINGS_TABLE).update(_serialize_fields(fields)).eq("id", earning_id)
        )
        row = _first(result)
        return Earning(**row) if row else None

    # === Payment accounts ===

    async def get_account(self, user_id: str) -> Optional[PaymentAccount]:
        row = await self._select_one(PAYMENT_ACCOUNTS_TABLE, "user_id", user_id)
        return PaymentAccount(**row) if row else None

    async def get_account_by_connect_id(self, account_id: str) -> Optional[PaymentAccount]:
        row = await self._select_one(PAYMENT_ACCOUNTS_TABLE, "stripe_connect_account_id", account_id)
        return PaymentAccount(**row) if row else None

    async def save_account(self, user_id: str, **fields: Any) -> PaymentAccount:
        data = _serialize_fields({"user_id": user_id, **fields})
        result = await self._run(
            self._db.table(PAYMENT_ACCOUNTS_TABLE).upsert(data, on_conflict="user_id")
        )
        row = _first(result)
        if row is None:
            raise RuntimeError(f"Failed to save payment account for user {user_id}")
        return PaymentAccount(**row)
