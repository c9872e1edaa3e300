"""Tests for the Stripe gateway adapter.

The Stripe SDK is patched at the resource level; no network calls are made.
"""

import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import stripe

from app.errors import GatewayError, GatewayRejected, WebhookSignatureError
from app.gateway import ChargeOptions, StripeGateway
from app.ledger import AccountStatus

API_KEY = "sk_test_gateway"
WEBHOOK_SECRET = "whsec_test_gateway"


@pytest.fixture
def stripe_gateway(ledger):
    return StripeGateway(
        API_KEY,
        ledger,
        webhook_secret=WEBHOOK_SECRET,
        onboarding_refresh_url="https://app.example.test/connect/refresh",
        onboarding_return_url="https://app.example.test/connect/return",
    )


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def test_requires_api_key(ledger):
    with pytest.raises(ValueError):
        StripeGateway("", ledger)


class TestCustomers:
    @pytest.mark.asyncio
    async def test_creates_and_persists_once(self, stripe_gateway, ledger):
        create = MagicMock(return_value=SimpleNamespace(id="cus_123"))
        with patch.object(stripe.Customer, "create", create):
            first = await stripe_gateway.ensure_customer("usr_a", "a@example.test")
            second = await stripe_gateway.ensure_customer("usr_a", "a@example.test")

        assert first == second == "cus_123"
        create.assert_called_once_with(
            api_key=API_KEY,
            email="a@example.test",
            metadata={"userId": "usr_a"},
            idempotency_key="customer-usr_a",
        )
        account = await ledger.get_account("usr_a")
        assert account.stripe_customer_id == "cus_123"
        assert account.email == "a@example.test"

    @pytest.mark.asyncio
    async def test_email_omitted_when_unknown(self, stripe_gateway):
        create = MagicMock(return_value=SimpleNamespace(id="cus_456"))
        with patch.object(stripe.Customer, "create", create):
            await stripe_gateway.ensure_customer("usr_b")
        assert "email" not in create.call_args.kwargs


class TestCharges:
    @pytest.mark.asyncio
    async def test_direct_charge(self, stripe_gateway):
        create = MagicMock(return_value=SimpleNamespace(id="pi_1", status="succeeded"))
        with patch.object(stripe.PaymentIntent, "create", create):
            result = await stripe_gateway.create_charge(
                "cus_1", "pm_card_visa", 5250, {"jobId": "1"}, ChargeOptions(idempotency_key="job-1-charge-0")
            )

        assert result.external_id == "pi_1"
        assert result.succeeded
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 5250
        assert kwargs["currency"] == "usd"
        assert kwargs["customer"] == "cus_1"
        assert kwargs["confirm"] is True
        assert kwargs["idempotency_key"] == "job-1-charge-0"
        assert "transfer_data" not in kwargs
        assert "capture_method" not in kwargs

    @pytest.mark.asyncio
    async def test_split_charge(self, stripe_gateway):
        create = MagicMock(return_value=SimpleNamespace(id="pi_2", status="processing"))
        options = ChargeOptions(destination_account_id="acct_1", application_fee_cents=250)
        with patch.object(stripe.PaymentIntent, "create", create):
            result = await stripe_gateway.create_charge("cus_1", "pm_card_visa", 10250, {}, options)

        assert not result.succeeded
        kwargs = create.call_args.kwargs
        assert kwargs["transfer_data"] == {"destination": "acct_1"}
        assert kwargs["application_fee_amount"] == 250
        assert "idempotency_key" not in kwargs

    @pytest.mark.asyncio
    async def test_manual_capture(self, stripe_gateway):
        create = MagicMock(return_value=SimpleNamespace(id="pi_3", status="requires_capture"))
        with patch.object(stripe.PaymentIntent, "create", create):
            await stripe_gateway.create_charge("cus_1", "pm_card_visa", 1000, {}, ChargeOptions(capture_now=False))
        assert create.call_args.kwargs["capture_method"] == "manual"

    @pytest.mark.asyncio
    async def test_card_error_is_rejection(self, stripe_gateway):
        error = stripe.CardError("Your card was declined.", param=None, code="card_declined")
        with patch.object(stripe.PaymentIntent, "create", MagicMock(side_effect=error)):
            with pytest.raises(GatewayRejected) as exc_info:
                await stripe_gateway.create_charge("cus_1", "pm_card_chargeDeclined", 5250, {})
        assert exc_info.value.code == "card_declined"
        assert exc_info.value.message == "Your card was declined."

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, stripe_gateway):
        error = stripe.APIConnectionError("Network unreachable")
        with patch.object(stripe.PaymentIntent, "create", MagicMock(side_effect=error)):
            with pytest.raises(GatewayError) as exc_info:
                await stripe_gateway.create_charge("cus_1", "pm_card_visa", 5250, {})
        assert not isinstance(exc_info.value, GatewayRejected)


class TestTransfersAndRefunds:
    @pytest.mark.asyncio
    async def test_transfer(self, stripe_gateway):
        create = MagicMock(return_value=SimpleNamespace(id="tr_1", reversed=False))
        with patch.object(stripe.Transfer, "create", create):
            result = await stripe_gateway.create_transfer(
                "acct_1", 4750, {"earningId": "9"}, transfer_group="job-1", idempotency_key="earning-9-transfer-0"
            )

        assert result.external_id == "tr_1"
        assert result.status == "succeeded"
        create.assert_called_once_with(
            api_key=API_KEY,
            amount=4750,
            currency="usd",
            destination="acct_1",
            transfer_group="job-1",
            metadata={"earningId": "9"},
            idempotency_key="earning-9-transfer-0",
        )

    @pytest.mark.asyncio
    async def test_refund(self, stripe_gateway):
        create = MagicMock(return_value=SimpleNamespace(id="re_1", status="succeeded"))
        with patch.object(stripe.Refund, "create", create):
            result = await stripe_gateway.refund("pi_1", idempotency_key="refund-4")

        assert result.succeeded
        assert create.call_args.kwargs["payment_intent"] == "pi_1"
        assert create.call_args.kwargs["idempotency_key"] == "refund-4"

    @pytest.mark.asyncio
    async def test_invalid_request_is_rejection(self, stripe_gateway):
        error = stripe.InvalidRequestError("Charge has already been refunded.", param="payment_intent")
        with patch.object(stripe.Refund, "create", MagicMock(side_effect=error)):
            with pytest.raises(GatewayRejected):
                await stripe_gateway.refund("pi_1")


class TestConnectedAccounts:
    @pytest.mark.asyncio
    async def test_create_once(self, stripe_gateway, ledger):
        create = MagicMock(return_value=SimpleNamespace(id="acct_1"))
        with patch.object(stripe.Account, "create", create):
            first = await stripe_gateway.ensure_connected_account("usr_w", "w@example.test")
            second = await stripe_gateway.ensure_connected_account("usr_w")

        assert first == second == "acct_1"
        create.assert_called_once()
        assert create.call_args.kwargs["type"] == "express"
        assert create.call_args.kwargs["metadata"] == {"userId": "usr_w"}
        account = await ledger.get_account("usr_w")
        assert account.connect_account_status == AccountStatus.pending

    @pytest.mark.asyncio
    async def test_status(self, stripe_gateway):
        remote = SimpleNamespace(
            charges_enabled=False,
            payouts_enabled=False,
            details_submitted=True,
            requirements=SimpleNamespace(currently_due=["external_account"], disabled_reason=None),
        )
        with patch.object(stripe.Account, "retrieve", MagicMock(return_value=remote)):
            info = await stripe_gateway.get_connected_account_status("acct_1")

        assert info.requirements_due == ("external_account",)
        assert info.status == AccountStatus.incomplete

    @pytest.mark.asyncio
    async def test_onboarding_link(self, stripe_gateway):
        create = MagicMock(return_value=SimpleNamespace(url="https://connect.stripe.com/setup/e/acct_1"))
        with patch.object(stripe.AccountLink, "create", create):
            url = await stripe_gateway.create_onboarding_link("acct_1")

        assert url == "https://connect.stripe.com/setup/e/acct_1"
        kwargs = create.call_args.kwargs
        assert kwargs["type"] == "account_onboarding"
        assert kwargs["return_url"] == "https://app.example.test/connect/return"


class TestWebhookVerification:
    def test_valid_signature(self, stripe_gateway):
        payload = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {}}})
        event = stripe_gateway.verify_webhook(payload.encode(), sign(payload))
        assert event["id"] == "evt_1"

    def test_wrong_secret(self, stripe_gateway):
        payload = json.dumps({"id": "evt_1"})
        with pytest.raises(WebhookSignatureError):
            stripe_gateway.verify_webhook(payload.encode(), sign(payload, secret="whsec_other"))

    def test_tampered_body(self, stripe_gateway):
        payload = json.dumps({"id": "evt_1", "data": {"object": {"amount": 100}}})
        signature = sign(payload)
        tampered = payload.replace("100", "999999")
        with pytest.raises(WebhookSignatureError):
            stripe_gateway.verify_webhook(tampered.encode(), signature)

    def test_stale_timestamp(self, stripe_gateway):
        payload = json.dumps({"id": "evt_1"})
        with pytest.raises(WebhookSignatureError):
            stripe_gateway.verify_webhook(payload.encode(), sign(payload, timestamp=int(time.time()) - 3600))

    def test_missing_signature(self, stripe_gateway):
        with pytest.raises(WebhookSignatureError):
            stripe_gateway.verify_webhook(b"{}", None)

    def test_missing_secret(self, ledger):
        gateway = StripeGateway(API_KEY, ledger)
        with pytest.raises(WebhookSignatureError):
            gateway.verify_webhook(b"{}", "t=1,v1=abc")
