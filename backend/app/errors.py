"""Error taxonomy for the marketplace payment core.

Every error carries a human-readable ``message`` that is safe to return to
the caller. Routes never catch these; ``app.main`` maps them to HTTP
responses in one place.
"""


class MarketplaceError(Exception):
    """Base class for all marketplace errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    """Input rejected by the content/amount guard or a state precondition."""

    status_code = 400


class AuthorizationError(MarketplaceError):
    """The current user does not hold the role required for the operation."""

    status_code = 403


class NotFoundError(MarketplaceError):
    """A referenced job, task, application, payment or earning does not exist."""

    status_code = 404


class DuplicateRecordError(MarketplaceError):
    """A ledger unique constraint rejected an insert."""

    status_code = 409

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class GatewayRejected(MarketplaceError):
    """The payment processor permanently refused the request."""

    status_code = 402

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class GatewayError(MarketplaceError):
    """Transient processor or network failure. Safe for the caller to retry."""

    status_code = 502


class ReconciliationConflict(MarketplaceError):
    """A webhook event references a job, payment or earning we do not know."""

    status_code = 409


class WebhookSignatureError(MarketplaceError):
    """Webhook payload failed signature verification."""

    status_code = 400
