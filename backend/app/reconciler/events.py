"""Typed view of payment-processor webhook events.

Every event type the reconciler understands is a ``GatewayEventKind``.
Anything else parses to ``GatewayEventKind.unknown`` and is acknowledged
without processing.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from app.ledger.models import from_cents


class GatewayEventKind(str, Enum):
    payment_succeeded = "payment_intent.succeeded"
    payment_failed = "payment_intent.payment_failed"
    payment_canceled = "payment_intent.canceled"
    charge_refunded = "charge.refunded"
    transfer_created = "transfer.created"
    transfer_paid = "transfer.paid"
    transfer_failed = "transfer.failed"
    transfer_reversed = "transfer.reversed"
    account_updated = "account.updated"
    unknown = "unknown"

    @classmethod
    def from_type(cls, event_type: str) -> "GatewayEventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.unknown


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class GatewayEvent:
    """A verified webhook event reduced to what reconciliation needs."""

    id: str
    type: str
    kind: GatewayEventKind
    object: dict[str, Any] = field(default_factory=dict)

    @property
    def object_id(self) -> Optional[str]:
        return self.object.get("id")

    @property
    def metadata(self) -> dict[str, str]:
        return self.object.get("metadata") or {}

    @property
    def job_id(self) -> Optional[int]:
        return _int_or_none(self.metadata.get("jobId"))

    @property
    def earning_id(self) -> Optional[int]:
        return _int_or_none(self.metadata.get("earningId"))

    @property
    def worker_id(self) -> Optional[str]:
        return self.metadata.get("workerId")

    @property
    def payer_id(self) -> Optional[str]:
        return self.metadata.get("posterId") or self.metadata.get("userId")

    @property
    def payment_type(self) -> Optional[str]:
        return self.metadata.get("paymentType")

    def amount(self, key: str = "amount") -> Optional[Decimal]:
        """Amount field converted from minor units."""
        cents = self.object.get(key)
        return from_cents(cents) if cents is not None else None

    def metadata_decimal(self, key: str) -> Optional[Decimal]:
        value = self.metadata.get(key)
        if value in (None, ""):
            return None
        return Decimal(str(value))


def parse_event(payload: dict[str, Any]) -> GatewayEvent:
    """Build a GatewayEvent from a decoded webhook body."""
    event_type = payload.get("type") or ""
    data = payload.get("data") or {}
    return GatewayEvent(
        id=payload.get("id") or "",
        type=event_type,
        kind=GatewayEventKind.from_type(event_type),
        object=data.get("object") or {},
    )
