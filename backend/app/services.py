"""Service wiring.

One ``MarketplaceServices`` container is built at startup and hung on
``app.state.services``. Route handlers reach it through the dependencies
below, so tests can install a container built from in-memory parts.
"""

import logging
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request

from .config import Settings
from .database import create_supabase_client
from .gateway import PaymentGateway, StripeGateway
from .ledger import InMemoryLedgerStore, LedgerStore, SupabaseLedgerStore
from .notifier import InMemoryNotifier, Notifier, SupabaseNotifier
from .payments import JobPaymentOrchestrator
from .reconciler import EventReconciler

logger = logging.getLogger("fixer.services")


@dataclass
class MarketplaceServices:
    ledger: LedgerStore
    gateway: PaymentGateway
    notifier: Notifier
    orchestrator: JobPaymentOrchestrator
    reconciler: EventReconciler


def assemble_services(
    ledger: LedgerStore,
    gateway: PaymentGateway,
    notifier: Notifier,
    settings: Settings | None = None,
) -> MarketplaceServices:
    """Wire the orchestrator and reconciler around the given adapters."""
    economics = {}
    if settings is not None:
        economics = {
            "service_fee": settings.service_fee,
            "min_amount": settings.min_payment_amount,
            "max_amount": settings.max_payment_amount,
        }
    orchestrator = JobPaymentOrchestrator(ledger, gateway, notifier, **economics)
    reconciler = EventReconciler(ledger, gateway, orchestrator)
    return MarketplaceServices(
        ledger=ledger,
        gateway=gateway,
        notifier=notifier,
        orchestrator=orchestrator,
        reconciler=reconciler,
    )


def build_services(settings: Settings) -> MarketplaceServices:
    """Build the production container for the configured storage backend."""
    if settings.storage_backend == "memory":
        ledger: LedgerStore = InMemoryLedgerStore()
        notifier: Notifier = InMemoryNotifier()
    else:
        db = create_supabase_client(settings)
        ledger = SupabaseLedgerStore(db)
        notifier = SupabaseNotifier(db)

    gateway = StripeGateway(
        api_key=settings.stripe_secret_key,
        accounts=ledger,
        webhook_secret=settings.stripe_webhook_secret,
        currency=settings.currency,
        timeout_seconds=settings.stripe_timeout_seconds,
        onboarding_refresh_url=settings.onboarding_refresh_url,
        onboarding_return_url=settings.onboarding_return_url,
    )
    logger.info("Services built | storage=%s | currency=%s", settings.storage_backend, settings.currency)
    return assemble_services(ledger, gateway, notifier, settings)


# =============================================================================
# Dependencies
# =============================================================================


def get_services(request: Request) -> MarketplaceServices:
    return request.app.state.services


def get_orchestrator(request: Request) -> JobPaymentOrchestrator:
    return get_services(request).orchestrator


def get_reconciler(request: Request) -> EventReconciler:
    return get_services(request).reconciler


# Type aliases for dependency injection
Services = Annotated[MarketplaceServices, Depends(get_services)]
Orchestrator = Annotated[JobPaymentOrchestrator, Depends(get_orchestrator)]
Reconciler = Annotated[EventReconciler, Depends(get_reconciler)]
