"""Connected payout account routes."""

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ..auth import CurrentUser
from ..ledger import AccountStatus
from ..logging_config import get_logger
from ..payments import AccountStatusView
from ..rate_limit import limiter
from ..services import Orchestrator

logger = get_logger("fixer.routes.connect")
router = APIRouter(prefix="/connect", tags=["connect"])


class AccountStatusResponse(BaseModel):
    exists: bool
    account_status: AccountStatus = AccountStatus.incomplete
    charges_enabled: bool = False
    payouts_enabled: bool = False
    requirements_due: list[str] = []
    onboarding_url: str | None = None


def to_status_response(view: AccountStatusView) -> AccountStatusResponse:
    return AccountStatusResponse(
        exists=view.exists,
        account_status=view.account_status,
        charges_enabled=view.charges_enabled,
        payouts_enabled=view.payouts_enabled,
        requirements_due=view.requirements_due,
        onboarding_url=view.onboarding_url,
    )


@router.post("/account", response_model=AccountStatusResponse)
@limiter.limit("5/minute")
async def create_connected_account(request: Request, auth: CurrentUser, orchestrator: Orchestrator):
    """
    Create (or reuse) the caller's payout account and return an onboarding link.

    Safe to call repeatedly; the processor account is created once per user.
    """
    logger.info(f"POST /connect/account | user={auth.user_id}")
    view = await orchestrator.setup_connected_account(auth.user_id, auth.email)
    return to_status_response(view)


@router.get("/account-status", response_model=AccountStatusResponse)
@limiter.limit("30/minute")
async def connected_account_status(request: Request, auth: CurrentUser, orchestrator: Orchestrator):
    view = await orchestrator.connected_account_status(auth.user_id)
    return to_status_response(view)
