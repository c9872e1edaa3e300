"""Payment processor webhook endpoint.

Not rate limited: the processor retries on any non-2xx, including 429.
"""

from fastapi import APIRouter, Header, Request, status
from fastapi.responses import JSONResponse

from ..errors import WebhookSignatureError
from ..logging_config import get_logger
from ..services import Reconciler

logger = get_logger("fixer.routes.webhooks")
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    reconciler: Reconciler,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
):
    """
    Receive a signed Stripe event.

    - 400 when the signature does not verify (the body is never parsed)
    - 500 when reconciliation fails unexpectedly, so Stripe redelivers
    - ``{"received": true}`` otherwise, including for ignored, duplicate
      and conflicting events
    """
    payload = await request.body()
    try:
        event = reconciler.verify(payload, stripe_signature)
    except WebhookSignatureError as e:
        logger.warning(f"Rejected webhook: {e.message}")
        raise

    try:
        outcome = await reconciler.reconcile(event)
    except Exception:
        logger.exception(f"Webhook {event.id} ({event.type}) failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"message": "Webhook processing failed"},
        )

    return {"received": True, "outcome": outcome.value}
