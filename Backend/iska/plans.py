"""
Plan constants for Iska Service OS.

Plans: Free (15-day trial), Starter ($45/mo), Lifetime ($500 one-time).
"""

from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

PLAN_FREE = "free"
PLAN_STARTER = "starter"
PLAN_LIFETIME = "lifetime"

PAID_PLANS = (PLAN_STARTER, PLAN_LIFETIME)

TRIAL_DAYS = 15

# Fixed platform pricing, USD major units.
PLAN_PRICES: dict[str, Decimal] = {
    PLAN_STARTER: Decimal("45.00"),
    PLAN_LIFETIME: Decimal("500.00"),
}
PLAN_CURRENCY = "usd"

LIFETIME_THRESHOLD = Decimal("500")
LIFETIME_THRESHOLD_MINOR_UNITS = 50000


def is_paid_plan(plan: Optional[str]) -> bool:
    return plan in PAID_PLANS


def normalize_plan(value: Optional[str]) -> Optional[str]:
    """Return 'starter' or 'lifetime' for a (case-insensitive) paid plan name, else None."""
    plan = (value or "").strip().lower()
    return plan if plan in PAID_PLANS else None


def infer_plan_from_amount(amount: Union[str, int, float, Decimal, None]) -> str:
    """Classify a payment in major units: >= 500.00 is lifetime, anything else starter."""
    try:
        value = Decimal(str(amount)) if amount is not None else Decimal("0")
    except InvalidOperation:
        value = Decimal("0")
    if value.is_nan():
        value = Decimal("0")
    return PLAN_LIFETIME if value >= LIFETIME_THRESHOLD else PLAN_STARTER


def infer_plan_from_minor_units(amount_minor: Optional[int]) -> str:
    return PLAN_LIFETIME if (amount_minor or 0) >= LIFETIME_THRESHOLD_MINOR_UNITS else PLAN_STARTER


def trial_end_date(start: datetime) -> datetime:
    return start + timedelta(days=TRIAL_DAYS)
