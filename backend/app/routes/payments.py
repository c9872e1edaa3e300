"""Payment routes: paying for a job and payment history."""

from decimal import Decimal

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..auth import CurrentUser
from ..ledger import Payment, PaymentStatus, PaymentType
from ..logging_config import get_logger
from ..rate_limit import limiter
from ..services import Orchestrator

logger = get_logger("fixer.routes.payments")
router = APIRouter(tags=["payments"])


class JobPaymentCreate(BaseModel):
    """Charge for a job that is unpaid or whose earlier charge failed."""

    payment_method_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    payment_type: PaymentType


class JobPaymentResponse(BaseModel):
    success: bool
    payment_id: int
    status: PaymentStatus


@router.post("/jobs/{job_id}/payments", response_model=JobPaymentResponse)
@limiter.limit("10/minute")
async def pay_for_job(
    request: Request,
    job_id: int,
    body: JobPaymentCreate,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """
    Pay for a job.

    ``amount`` must equal the job's payment amount; the platform fee is
    added on top. Declined cards come back as 402 with the processor's
    reason.
    """
    logger.info(f"POST /jobs/{job_id}/payments | payer={auth.user_id} | amount={body.amount}")
    payment = await orchestrator.pay_for_job(
        job_id,
        auth.user_id,
        body.payment_method_id,
        body.amount,
        body.payment_type,
        payer_email=auth.email,
    )
    return JobPaymentResponse(
        success=payment.status != PaymentStatus.failed,
        payment_id=payment.id,
        status=payment.status,
    )


@router.get("/jobs/{job_id}/payments", response_model=list[Payment])
@limiter.limit("60/minute")
async def list_job_payments(
    request: Request,
    job_id: int,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    return await orchestrator.list_job_payments(job_id, auth.user_id)


@router.get("/payments/me", response_model=list[Payment])
@limiter.limit("60/minute")
async def list_my_payments(request: Request, auth: CurrentUser, orchestrator: Orchestrator):
    """Payments where the current user is payer or payee, newest first."""
    return await orchestrator.list_user_payments(auth.user_id)
