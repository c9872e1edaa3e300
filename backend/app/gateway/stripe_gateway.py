"""Stripe implementation of the payment gateway.

No module-level ``stripe.api_key`` is set: the key is passed on every
request, so several gateways (e.g. test and live) can coexist in one
process. The SDK is synchronous; calls run in a worker thread with a
caller-side timeout.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Optional

import stripe

from app.errors import GatewayError, GatewayRejected, WebhookSignatureError
from app.ledger.models import AccountStatus
from app.ledger.store import LedgerStore
from app.logging_config import log_payment_event

from .base import (
    ChargeOptions,
    ChargeResult,
    ConnectedAccountInfo,
    RefundResult,
    TransferResult,
)

logger = logging.getLogger("fixer.gateway.stripe")

WEBHOOK_TOLERANCE_SECONDS = 300

# Errors where retrying the same request cannot succeed
_PERMANENT_ERRORS = (
    stripe.CardError,
    stripe.InvalidRequestError,
    stripe.PermissionError,
)


class StripeGateway:
    """Payment gateway backed by Stripe PaymentIntents, Transfers and Connect."""

    def __init__(
        self,
        api_key: str,
        accounts: LedgerStore,
        webhook_secret: Optional[str] = None,
        currency: str = "usd",
        timeout_seconds: float = 30,
        onboarding_refresh_url: str = "",
        onboarding_return_url: str = "",
    ):
        if not api_key:
            raise ValueError("A Stripe secret key is required")
        self._api_key = api_key
        self._accounts = accounts
        self._webhook_secret = webhook_secret
        self._currency = currency
        self._timeout = timeout_seconds
        self._refresh_url = onboarding_refresh_url
        self._return_url = onboarding_return_url

    async def _call(self, operation: str, fn: Callable[..., Any], **params: Any) -> Any:
        """Run a Stripe SDK call, translating SDK errors into the gateway taxonomy."""
        params = {k: v for k, v in params.items() if v is not None}
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, api_key=self._api_key, **params),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning("Stripe %s timed out after %ss", operation, self._timeout)
            raise GatewayError(f"Payment processor timed out during {operation}") from e
        except _PERMANENT_ERRORS as e:
            logger.info("Stripe rejected %s: code=%s message=%s", operation, e.code, e.user_message)
            raise GatewayRejected(e.user_message or str(e), code=e.code) from e
        except stripe.StripeError as e:
            logger.warning("Stripe %s failed: %s", operation, e)
            raise GatewayError(e.user_message or f"Payment processor error during {operation}") from e

    # ------------------------------------------------------------------
    # Customers and charges
    # ------------------------------------------------------------------

    async def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        account = await self._accounts.get_account(user_id)
        if account and account.stripe_customer_id:
            return account.stripe_customer_id

        customer = await self._call(
            "create customer",
            stripe.Customer.create,
            email=email,
            metadata={"userId": user_id},
            idempotency_key=f"customer-{user_id}",
        )
        fields = {"stripe_customer_id": customer.id}
        if email:
            fields["email"] = email
        await self._accounts.save_account(user_id, **fields)
        log_payment_event(logger, "customer_created", user=user_id, customer=customer.id)
        return customer.id

    async def create_charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount_cents: int,
        metadata: dict[str, str],
        options: ChargeOptions = ChargeOptions(),
    ) -> ChargeResult:
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": self._currency,
            "customer": customer_id,
            "payment_method": payment_method_id,
            "confirm": True,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
        }
        if not options.capture_now:
            params["capture_method"] = "manual"
        if options.destination_account_id:
            params["transfer_data"] = {"destination": options.destination_account_id}
            if options.application_fee_cents is not None:
                params["application_fee_amount"] = options.application_fee_cents

        intent = await self._call(
            "create charge",
            stripe.PaymentIntent.create,
            idempotency_key=options.idempotency_key,
            **params,
        )
        log_payment_event(
            logger,
            "charge_created",
            intent=intent.id,
            status=intent.status,
            amount_cents=amount_cents,
            destination=options.destination_account_id,
        )
        return ChargeResult(external_id=intent.id, status=intent.status, amount_cents=amount_cents)

    async def create_transfer(
        self,
        destination_account_id: str,
        amount_cents: int,
        metadata: dict[str, str],
        transfer_group: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        transfer = await self._call(
            "create transfer",
            stripe.Transfer.create,
            amount=amount_cents,
            currency=self._currency,
            destination=destination_account_id,
            transfer_group=transfer_group,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        status = "reversed" if getattr(transfer, "reversed", False) else "succeeded"
        log_payment_event(
            logger,
            "transfer_created",
            transfer=transfer.id,
            destination=destination_account_id,
            amount_cents=amount_cents,
        )
        return TransferResult(external_id=transfer.id, status=status)

    async def refund(self, external_charge_id: str, idempotency_key: Optional[str] = None) -> RefundResult:
        refund = await self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=external_charge_id,
            reason="requested_by_customer",
            idempotency_key=idempotency_key,
        )
        log_payment_event(logger, "refund_created", refund=refund.id, intent=external_charge_id, status=refund.status)
        return RefundResult(external_id=refund.id, status=refund.status)

    # ------------------------------------------------------------------
    # Connected accounts
    # ------------------------------------------------------------------

    async def ensure_connected_account(self, user_id: str, email: Optional[str] = None) -> str:
        account = await self._accounts.get_account(user_id)
        if account and account.stripe_connect_account_id:
            return account.stripe_connect_account_id

        connected = await self._call(
            "create connected account",
            stripe.Account.create,
            type="express",
            email=email,
            capabilities={
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            metadata={"userId": user_id},
            idempotency_key=f"connect-{user_id}",
        )
        await self._accounts.save_account(
            user_id,
            stripe_connect_account_id=connected.id,
            connect_account_status=AccountStatus.pending,
        )
        log_payment_event(logger, "connected_account_created", user=user_id, account=connected.id)
        return connected.id

    async def get_connected_account_status(self, account_id: str) -> ConnectedAccountInfo:
        account = await self._call("retrieve connected account", stripe.Account.retrieve, id=account_id)
        requirements = getattr(account, "requirements", None)
        return ConnectedAccountInfo(
            account_id=account_id,
            charges_enabled=bool(getattr(account, "charges_enabled", False)),
            payouts_enabled=bool(getattr(account, "payouts_enabled", False)),
            details_submitted=bool(getattr(account, "details_submitted", False)),
            requirements_due=tuple(getattr(requirements, "currently_due", None) or ()),
            disabled_reason=getattr(requirements, "disabled_reason", None),
        )

    async def create_onboarding_link(self, account_id: str) -> str:
        link = await self._call(
            "create onboarding link",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=self._refresh_url,
            return_url=self._return_url,
            type="account_onboarding",
        )
        return link.url

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        if not self._webhook_secret:
            raise WebhookSignatureError("Webhook secret is not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self._webhook_secret, WEBHOOK_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError("Invalid webhook signature") from e

        try:
            event = json.loads(body)
        except ValueError as e:
            raise WebhookSignatureError("Webhook payload is not valid JSON") from e
        if not isinstance(event, dict):
            raise WebhookSignatureError("Webhook payload is not an event object")
        return event
