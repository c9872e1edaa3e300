"""Content and amount checks applied before a job is created or paid.

Both checks are pure and synchronous. A rejection is a user-facing
validation failure and is never retried.

Usage:
    from app.guard import check_job_content, check_amount

    result = check_job_content("Fix my fence", "Two panels blew down in the storm")
    if not result.approved:
        raise ValidationError(result.reason)
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

# Case-insensitive substring match against title and description
PROHIBITED_TERMS = (
    "scam",
    "illegal",
    "fraud",
    "fake",
    "spam",
    "inappropriate",
    "adult",
)

MIN_TITLE_LENGTH = 5
MIN_DESCRIPTION_LENGTH = 20

MIN_PAYMENT_AMOUNT = Decimal("10")
MAX_PAYMENT_AMOUNT = Decimal("10000")

CENT = Decimal("0.01")


@dataclass(frozen=True)
class GuardResult:
    """Outcome of a guard check."""

    approved: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"approved": self.approved}
        if self.reason:
            data["reason"] = self.reason
        return data


APPROVED = GuardResult(approved=True)


def contains_prohibited_terms(text: str) -> bool:
    lowered = text.lower()
    return any(term in lowered for term in PROHIBITED_TERMS)


def check_job_content(title: Optional[str], description: Optional[str]) -> GuardResult:
    """Validate a job's title and description."""
    title = (title or "").strip()
    description = (description or "").strip()

    if not title or not description:
        return GuardResult(False, "Title and description are required")

    if contains_prohibited_terms(title) or contains_prohibited_terms(description):
        return GuardResult(False, "Content contains prohibited terms")

    if len(title) < MIN_TITLE_LENGTH or len(description) < MIN_DESCRIPTION_LENGTH:
        return GuardResult(False, "Title or description is too short")

    return APPROVED


def _format_dollars(amount: Decimal) -> str:
    if amount == amount.to_integral_value():
        return f"${int(amount):,}"
    return f"${amount:,.2f}"


def check_amount(
    amount,
    minimum: Decimal = MIN_PAYMENT_AMOUNT,
    maximum: Decimal = MAX_PAYMENT_AMOUNT,
) -> GuardResult:
    """Validate a payment amount against the platform bounds (inclusive)."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError):
        return GuardResult(False, "Payment amount must be a number")

    if not value.is_finite():
        return GuardResult(False, "Payment amount must be a number")
    if value < minimum:
        return GuardResult(False, f"Minimum payment amount is {_format_dollars(minimum)}")
    if value > maximum:
        return GuardResult(False, f"Maximum payment amount is {_format_dollars(maximum)}")
    if value != value.quantize(CENT):
        return GuardResult(False, "Payment amount cannot include fractions of a cent")
    return APPROVED
