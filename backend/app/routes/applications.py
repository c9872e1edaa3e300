"""Job application routes."""

from fastapi import APIRouter, Request, status
from pydantic import BaseModel

from ..auth import CurrentUser
from ..ledger import Job, JobApplication
from ..logging_config import get_logger
from ..rate_limit import limiter
from ..services import Orchestrator

logger = get_logger("fixer.routes.applications")
router = APIRouter(prefix="/jobs/{job_id}/applications", tags=["applications"])


class ApplicationCreate(BaseModel):
    message: str = ""


class ApplicationListResponse(BaseModel):
    applications: list[JobApplication]
    total: int


@router.post("", response_model=JobApplication, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def apply_to_job(
    request: Request,
    job_id: int,
    body: ApplicationCreate,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    logger.info(f"POST /jobs/{job_id}/applications | worker={auth.user_id}")
    return await orchestrator.apply_to_job(job_id, auth.user_id, body.message)


@router.get("", response_model=ApplicationListResponse)
@limiter.limit("30/minute")
async def list_applications(
    request: Request,
    job_id: int,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """List applications for a job. Only the poster can see them."""
    applications = await orchestrator.list_applications(job_id, auth.user_id)
    return ApplicationListResponse(applications=applications, total=len(applications))


@router.post("/{application_id}/accept", response_model=Job)
@limiter.limit("10/minute")
async def accept_application(
    request: Request,
    job_id: int,
    application_id: int,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """
    Accept an application.

    The applicant becomes the job's worker and every other pending
    application is rejected.
    """
    logger.info(f"POST /jobs/{job_id}/applications/{application_id}/accept | poster={auth.user_id}")
    return await orchestrator.accept_application(job_id, application_id, auth.user_id)
