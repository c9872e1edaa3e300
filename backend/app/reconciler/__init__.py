"""Webhook event reconciliation."""

from .events import GatewayEvent, GatewayEventKind, parse_event
from .service import EventReconciler, ReconcileOutcome

__all__ = [
    "GatewayEvent",
    "GatewayEventKind",
    "parse_event",
    "EventReconciler",
    "ReconcileOutcome",
]
