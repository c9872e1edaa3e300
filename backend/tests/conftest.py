"""Pytest configuration and fixtures."""

import json
import os
import secrets
import sys
from typing import Optional

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

# For unit tests, set mock values ONLY if not running integration tests
if not os.environ.get("RUN_INTEGRATION"):
    os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
    os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
    os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
    os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_only")
    os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_only")
    os.environ.setdefault("STORAGE_BACKEND", "memory")
else:
    # For integration tests, load from .env
    from pathlib import Path

    from dotenv import load_dotenv

    if not os.environ.get("CONFIRM_INTEGRATION_CREDENTIALS"):
        print(
            "Integration tests use REAL Stripe and Supabase credentials from .env. "
            "Set CONFIRM_INTEGRATION_CREDENTIALS=yes to proceed.",
            file=sys.stderr,
        )
        pytest.exit("Integration tests require CONFIRM_INTEGRATION_CREDENTIALS=yes", returncode=1)
    load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from app.errors import WebhookSignatureError  # noqa: E402
from app.gateway import (  # noqa: E402
    ChargeOptions,
    ChargeResult,
    ConnectedAccountInfo,
    RefundResult,
    TransferResult,
)
from app.ledger import AccountStatus, InMemoryLedgerStore  # noqa: E402
from app.main import app  # noqa: E402
from app.notifier import InMemoryNotifier  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from app.services import assemble_services  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

POSTER_ID = "usr_TEST_POSTER_0001"
WORKER_ID = "usr_TEST_WORKER_0001"
OTHER_ID = "usr_TEST_OTHER_00001"


class FakeGateway:
    """In-process PaymentGateway that records every call.

    Behaviour is steered through attributes: ``charge_status``,
    ``charge_error``, ``transfer_error``, ``refund_error`` and
    ``account_info``. ``verify_webhook`` accepts the signature "valid".
    """

    def __init__(self, ledger):
        self.ledger = ledger
        self.charge_status = "succeeded"
        self.charge_error: Optional[Exception] = None
        self.transfer_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.refund_status = "succeeded"
        self.account_info: Optional[ConnectedAccountInfo] = None
        self.customers_created = []
        self.charges = []
        self.transfers = []
        self.refunds = []
        self.accounts_created = []
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_test_{self._seq:04d}"

    async def ensure_customer(self, user_id, email=None):
        account = await self.ledger.get_account(user_id)
        if account and account.stripe_customer_id:
            return account.stripe_customer_id
        customer_id = self._next("cus")
        self.customers_created.append(user_id)
        await self.ledger.save_account(user_id, stripe_customer_id=customer_id)
        return customer_id

    async def create_charge(self, customer_id, payment_method_id, amount_cents, metadata, options=ChargeOptions()):
        self.charges.append(
            {
                "customer_id": customer_id,
                "payment_method_id": payment_method_id,
                "amount_cents": amount_cents,
                "metadata": metadata,
                "options": options,
            }
        )
        if self.charge_error is not None:
            raise self.charge_error
        return ChargeResult(external_id=self._next("pi"), status=self.charge_status, amount_cents=amount_cents)

    async def create_transfer(self, destination_account_id, amount_cents, metadata, transfer_group=None, idempotency_key=None):
        self.transfers.append(
            {
                "destination": destination_account_id,
                "amount_cents": amount_cents,
                "metadata": metadata,
                "transfer_group": transfer_group,
                "idempotency_key": idempotency_key,
            }
        )
        if self.transfer_error is not None:
            raise self.transfer_error
        return TransferResult(external_id=self._next("tr"), status="succeeded")

    async def refund(self, external_charge_id, idempotency_key=None):
        self.refunds.append({"payment_intent": external_charge_id, "idempotency_key": idempotency_key})
        if self.refund_error is not None:
            raise self.refund_error
        return RefundResult(external_id=self._next("re"), status=self.refund_status)

    async def ensure_connected_account(self, user_id, email=None):
        account = await self.ledger.get_account(user_id)
        if account and account.stripe_connect_account_id:
            return account.stripe_connect_account_id
        account_id = self._next("acct")
        self.accounts_created.append(user_id)
        await self.ledger.save_account(
            user_id, stripe_connect_account_id=account_id, connect_account_status=AccountStatus.pending
        )
        return account_id

    async def get_connected_account_status(self, account_id):
        if self.account_info is not None:
            return ConnectedAccountInfo(
                account_id=account_id,
                charges_enabled=self.account_info.charges_enabled,
                payouts_enabled=self.account_info.payouts_enabled,
                details_submitted=self.account_info.details_submitted,
                requirements_due=self.account_info.requirements_due,
                disabled_reason=self.account_info.disabled_reason,
            )
        return ConnectedAccountInfo(account_id=account_id)

    async def create_onboarding_link(self, account_id):
        return f"https://connect.stripe.test/setup/{account_id}"

    def verify_webhook(self, payload, signature):
        if signature != "valid":
            raise WebhookSignatureError("Invalid webhook signature")
        return json.loads(payload)


@pytest.fixture
def ledger():
    return InMemoryLedgerStore()


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def gateway(ledger):
    return FakeGateway(ledger)


@pytest.fixture
def services(ledger, gateway, notifier):
    return assemble_services(ledger, gateway, notifier)


@pytest.fixture
def orchestrator(services):
    return services.orchestrator


@pytest.fixture
def reconciler(services):
    return services.reconciler


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """Start every test with empty rate limit buckets."""
    limiter.reset()
    yield


@pytest.fixture
def client(services):
    """Create a test client wired to in-memory services."""
    app.state.services = services
    yield TestClient(app)
    app.state.services = None


def _headers_for(user_id: str) -> dict:
    from app.auth import create_access_token
    from app.config import get_settings

    token = create_access_token(user_id, get_settings(), email=f"{user_id.lower()}@example.test")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def poster_id():
    return POSTER_ID


@pytest.fixture
def worker_id():
    return WORKER_ID


@pytest.fixture
def other_id():
    return OTHER_ID


@pytest.fixture
def poster_headers():
    return _headers_for(POSTER_ID)


@pytest.fixture
def worker_headers():
    return _headers_for(WORKER_ID)


@pytest.fixture
def other_headers():
    return _headers_for(OTHER_ID)
