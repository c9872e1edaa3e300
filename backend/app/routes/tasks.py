"""Task routes for a job's ordered checklist."""

from decimal import Decimal

from fastapi import APIRouter, Request, status
from pydantic import BaseModel, Field

from ..auth import CurrentUser
from ..ledger import Job, Task
from ..logging_config import get_logger
from ..rate_limit import limiter
from ..services import Orchestrator

logger = get_logger("fixer.routes.tasks")
router = APIRouter(prefix="/jobs/{job_id}/tasks", tags=["tasks"])


class TaskCreate(BaseModel):
    description: str = Field(..., min_length=1)
    bonus_amount: Decimal | None = Field(None, ge=0)


class TaskBatchCreate(BaseModel):
    """Tasks to append, in order."""

    tasks: list[TaskCreate] = Field(..., min_length=1)


class TaskUpdate(BaseModel):
    description: str | None = None
    bonus_amount: Decimal | None = Field(None, ge=0)


class TaskReorder(BaseModel):
    task_ids: list[int]


@router.get("", response_model=list[Task])
@limiter.limit("60/minute")
async def list_tasks(request: Request, job_id: int, auth: CurrentUser, orchestrator: Orchestrator):
    return await orchestrator.list_tasks(job_id)


@router.post("", response_model=list[Task], status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def add_tasks(
    request: Request,
    job_id: int,
    body: TaskBatchCreate,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    logger.info(f"POST /jobs/{job_id}/tasks | poster={auth.user_id} | count={len(body.tasks)}")
    return await orchestrator.add_tasks(
        job_id, auth.user_id, [(t.description, t.bonus_amount) for t in body.tasks]
    )


@router.patch("/{task_id}", response_model=Task)
@limiter.limit("30/minute")
async def update_task(
    request: Request,
    job_id: int,
    task_id: int,
    body: TaskUpdate,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    return await orchestrator.update_task(
        job_id, task_id, auth.user_id, description=body.description, bonus_amount=body.bonus_amount
    )


@router.delete("/{task_id}", response_model=Job)
@limiter.limit("30/minute")
async def delete_task(
    request: Request,
    job_id: int,
    task_id: int,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """Delete a task; remaining tasks close ranks. Returns the job with fresh counts."""
    logger.info(f"DELETE /jobs/{job_id}/tasks/{task_id} | poster={auth.user_id}")
    return await orchestrator.delete_task(job_id, task_id, auth.user_id)


@router.put("/order", response_model=list[Task])
@limiter.limit("30/minute")
async def reorder_tasks(
    request: Request,
    job_id: int,
    body: TaskReorder,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    return await orchestrator.reorder_tasks(job_id, auth.user_id, body.task_ids)


@router.post("/{task_id}/complete", response_model=Task)
@limiter.limit("60/minute")
async def complete_task(
    request: Request,
    job_id: int,
    task_id: int,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    logger.info(f"POST /jobs/{job_id}/tasks/{task_id}/complete | worker={auth.user_id}")
    return await orchestrator.complete_task(job_id, task_id, auth.user_id)
