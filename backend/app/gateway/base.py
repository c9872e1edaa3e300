"""Payment gateway capability interface.

The orchestrator and reconciler depend only on ``PaymentGateway``. Every
method is a network call that either returns a result or raises
``GatewayRejected`` (permanent) / ``GatewayError`` (transient). The adapter
never retries; retry policy belongs to the caller.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol

from app.ledger.models import AccountStatus, PaymentStatus

# Processor payment-intent statuses mapped onto ledger payment statuses
_INTENT_STATUS_MAP = {
    "succeeded": PaymentStatus.succeeded,
    "processing": PaymentStatus.pending,
    "requires_capture": PaymentStatus.pending,
    "requires_action": PaymentStatus.pending,
    "requires_confirmation": PaymentStatus.pending,
    "requires_payment_method": PaymentStatus.failed,
    "canceled": PaymentStatus.canceled,
}


def to_payment_status(processor_status: str) -> PaymentStatus:
    """Translate a processor payment-intent status into a ledger status."""
    return _INTENT_STATUS_MAP.get(processor_status, PaymentStatus.pending)


@dataclass(frozen=True)
class ChargeOptions:
    """How a charge is captured and whether it is split to a worker."""

    capture_now: bool = True
    destination_account_id: Optional[str] = None
    application_fee_cents: Optional[int] = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class ChargeResult:
    external_id: str
    status: str
    amount_cents: Optional[int] = None

    @property
    def payment_status(self) -> PaymentStatus:
        return to_payment_status(self.status)

    @property
    def succeeded(self) -> bool:
        return self.payment_status == PaymentStatus.succeeded


@dataclass(frozen=True)
class TransferResult:
    external_id: str
    status: str


@dataclass(frozen=True)
class RefundResult:
    external_id: str
    status: str

    @property
    def succeeded(self) -> bool:
        return self.status in ("succeeded", "pending")


@dataclass(frozen=True)
class ConnectedAccountInfo:
    """Readiness flags reported by the processor for a connected account."""

    account_id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    requirements_due: tuple[str, ...] = field(default_factory=tuple)
    disabled_reason: Optional[str] = None

    @property
    def status(self) -> AccountStatus:
        return derive_account_status(self)


def derive_account_status(info: ConnectedAccountInfo) -> AccountStatus:
    """Collapse processor flags into a single account status.

    Fully enabled accounts are active. A disabled reason or a partially
    enabled account is restricted. Outstanding requirements mean the user
    still has onboarding to finish. Anything else is awaiting review.
    """
    if info.charges_enabled and info.payouts_enabled:
        return AccountStatus.active
    if info.disabled_reason:
        return AccountStatus.restricted
    if info.requirements_due:
        return AccountStatus.incomplete
    if info.charges_enabled or info.payouts_enabled:
        return AccountStatus.restricted
    return AccountStatus.pending


class PaymentGateway(Protocol):
    """Capabilities the payment core needs from the external processor."""

    async def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Return the user's customer id, creating and persisting one if absent."""
        ...

    async def create_charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount_cents: int,
        metadata: dict[str, str],
        options: ChargeOptions = ChargeOptions(),
    ) -> ChargeResult:
        """Charge a customer directly, or split to a connected account."""
        ...

    async def create_transfer(
        self,
        destination_account_id: str,
        amount_cents: int,
        metadata: dict[str, str],
        transfer_group: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        """Move captured funds to a worker's connected account."""
        ...

    async def refund(self, external_charge_id: str, idempotency_key: Optional[str] = None) -> RefundResult:
        ...

    async def ensure_connected_account(self, user_id: str, email: Optional[str] = None) -> str:
        """Return the user's connected account id, creating one if absent."""
        ...

    async def get_connected_account_status(self, account_id: str) -> ConnectedAccountInfo:
        ...

    async def create_onboarding_link(self, account_id: str) -> str:
        """Return a hosted onboarding URL for a connected account."""
        ...

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        """Verify a signed webhook payload and return the decoded event.

        Raises WebhookSignatureError if the signature does not match.
        """
        ...
