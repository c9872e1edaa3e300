"""Worker earnings routes."""

from fastapi import APIRouter, Request

from ..auth import CurrentUser
from ..ledger import Earning, EarningsSummary
from ..logging_config import get_logger
from ..rate_limit import limiter
from ..services import Orchestrator

logger = get_logger("fixer.routes.earnings")
router = APIRouter(prefix="/earnings", tags=["earnings"])


@router.get("/me", response_model=EarningsSummary)
@limiter.limit("60/minute")
async def my_earnings(request: Request, auth: CurrentUser, orchestrator: Orchestrator):
    return await orchestrator.earnings_summary(auth.user_id)


@router.post("/{earning_id}/payout", response_model=Earning)
@limiter.limit("5/minute")
async def payout_earning(
    request: Request,
    earning_id: int,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    """Retry the transfer for a pending or failed earning (job poster only)."""
    logger.info(f"POST /earnings/{earning_id}/payout | poster={auth.user_id}")
    return await orchestrator.payout_earning(earning_id, auth.user_id)


@router.post("/{earning_id}/cancel", response_model=Earning)
@limiter.limit("10/minute")
async def cancel_earning(
    request: Request,
    earning_id: int,
    auth: CurrentUser,
    orchestrator: Orchestrator,
):
    logger.info(f"POST /earnings/{earning_id}/cancel | poster={auth.user_id}")
    return await orchestrator.cancel_earning(earning_id, auth.user_id)
