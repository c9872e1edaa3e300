"""Job routes.

Posting, editing, completing, settling and cancelling jobs. Money moves
only through the orchestrator; these handlers validate input and shape
responses.
"""

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Query, Request, status
from pydantic import BaseModel, Field

from ..auth import CurrentUser
from ..ledger import Job, JobStatus, Payment, PaymentType
from ..logging_config import get_logger
from ..payments import PaymentLifecycle
from ..rate_limit import limiter
from ..services import Orchestrator

logger = get_logger("fixer.routes.jobs")
router = APIRouter(prefix="/jobs", tags=["jobs"])


# =============================================================================
# Request/Response Models
# =============================================================================


class JobCreate(BaseModel):
    """Request to post a job, optionally paying for it up front."""

    title: str = Field(..., max_length=200)
    description: str
    payment_type: PaymentType
    payment_amount: Decimal = Field(..., gt=0)
    category: str | None = None
    date_needed: datetime | None = None
    payment_method_id: str | None = None


class JobUpdate(BaseModel):
    title: str | None = Field(None, max_length=200)
    description: str | None = None
    category: str | None = None
    date_needed: datetime | None = None
    payment_type: PaymentType | None = None
    payment_amount: Decimal | None = Field(None, gt=0)


class JobDetail(Job):
    """A job plus its derived payment lifecycle state."""

    payment_lifecycle: PaymentLifecycle


class JobCreateResponse(BaseModel):
    job: Job
    payment: Payment | None = None
    payment_error: str | None = None


class JobListResponse(BaseModel):
    jobs: list[Job]
    limit: int
    offset: int


class CancelJobResponse(BaseModel):
    success: bool
    message: str
    refund_processed: bool


class HourlySettlement(BaseModel):
    """Request to settle an hourly job for the hours worked."""

    payment_method_id: str = Field(..., min_length=1)
    hours: Decimal = Field(..., gt=0)


# =============================================================================
# Routes
# =============================================================================


@router.post("", response_model=JobCreateResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def create_job(
    request: Request,
    body: JobCreate,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """
    Post a job.

    Fixed-price jobs with a payment method are charged immediately. A failed
    charge keeps the job and reports ``payment_error``; retry through
    ``POST /jobs/{id}/payments``.
    """
    logger.info(f"POST /jobs | poster={auth.user_id} | type={body.payment_type.value}")
    created = await orchestrator.create_job(
        auth.user_id,
        title=body.title,
        description=body.description,
        payment_type=body.payment_type,
        payment_amount=body.payment_amount,
        category=body.category,
        date_needed=body.date_needed,
        payment_method_id=body.payment_method_id,
        poster_email=auth.email,
    )
    return JobCreateResponse(job=created.job, payment=created.payment, payment_error=created.payment_error)


@router.get("", response_model=JobListResponse)
@limiter.limit("60/minute")
async def list_jobs(
    request: Request,
    auth: CurrentUser,
    orchestrator: Orchestrator,
    status_filter: JobStatus | None = Query(None, alias="status"),
    poster_id: str | None = None,
    worker_id: str | None = None,
    category: str | None = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    jobs = await orchestrator.list_jobs(
        status=status_filter,
        poster_id=poster_id,
        worker_id=worker_id,
        category=category,
        limit=limit,
        offset=offset,
    )
    return JobListResponse(jobs=jobs, limit=limit, offset=offset)


@router.get("/{job_id}", response_model=JobDetail)
@limiter.limit("60/minute")
async def get_job(
    request: Request,
    job_id: int,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """Get a job with its payment lifecycle state."""
    job = await orchestrator.get_job(job_id)
    lifecycle = await orchestrator.lifecycle_of(job)
    return JobDetail(**job.model_dump(), payment_lifecycle=lifecycle)


@router.patch("/{job_id}", response_model=Job)
@limiter.limit("20/minute")
async def update_job(
    request: Request,
    job_id: int,
    body: JobUpdate,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """Edit an open job. Pricing is frozen once the job has been paid."""
    logger.info(f"PATCH /jobs/{job_id} | poster={auth.user_id}")
    return await orchestrator.update_job(job_id, auth.user_id, **body.model_dump(exclude_unset=True))


@router.delete("/{job_id}", response_model=CancelJobResponse)
@limiter.limit("10/minute")
async def cancel_job(
    request: Request,
    job_id: int,
    auth: CurrentUser,
    orchestrator: Orchestrator,
    with_refund: bool = Query(False),
):
    """
    Cancel a job.

    With ``with_refund`` the poster's captured payment is refunded first. A
    failed refund does not stop the cancellation; ``refund_processed``
    reports what actually happened.
    """
    logger.info(f"DELETE /jobs/{job_id} | poster={auth.user_id} | refund={with_refund}")
    result = await orchestrator.cancel_job(job_id, auth.user_id, with_refund=with_refund)
    return CancelJobResponse(
        success=result.success,
        message=result.message,
        refund_processed=result.refund_processed,
    )


@router.post("/{job_id}/complete", response_model=Job)
@limiter.limit("10/minute")
async def complete_job(
    request: Request,
    job_id: int,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """
    Mark a job complete.

    Only the assigned worker can complete a job, and only once every task
    is done. The worker's earning is recorded and paid out when possible.
    """
    logger.info(f"POST /jobs/{job_id}/complete | worker={auth.user_id}")
    return await orchestrator.complete_job(job_id, auth.user_id)


@router.post("/{job_id}/settle", response_model=Payment)
@limiter.limit("10/minute")
async def settle_hourly_job(
    request: Request,
    job_id: int,
    body: HourlySettlement,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """Charge the poster for the hours worked on a completed hourly job."""
    logger.info(f"POST /jobs/{job_id}/settle | poster={auth.user_id} | hours={body.hours}")
    return await orchestrator.settle_hourly_job(
        job_id,
        auth.user_id,
        body.payment_method_id,
        body.hours,
        payer_email=auth.email,
    )
