"""Pricing plans offered through PayPal checkout."""

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class PricingPlan:
    id: str
    name: str
    price: float
    currency: str
    features: tuple[str, ...]

    @property
    def is_paid(self) -> bool:
        return self.price > 0


PRICING_PLANS: dict[str, PricingPlan] = {
    "free": PricingPlan(
        id="free",
        name="Free",
        price=0.0,
        currency="USD",
        features=(
            "5 exports per day",
            "Excel and CSV export",
        ),
    ),
    "pro": PricingPlan(
        id="pro",
        name="Pro",
        price=5.00,
        currency="USD",
        features=(
            "Unlimited exports",
            "Google Sheets export",
            "Google Drive upload",
        ),
    ),
}

_ORDER_ID_RE = re.compile(r"^[A-Z0-9]{17}$")


def get_paid_plan(plan_type: str | None) -> PricingPlan | None:
    plan = PRICING_PLANS.get(plan_type or "")
    return plan if plan is not None and plan.is_paid else None


def format_amount(amount: float) -> str:
    """PayPal expects amounts as strings with exactly two decimals."""
    return f"{amount:.2f}"


def parse_amount(value: str | float | None) -> float:
    """Provider decimal string to float; missing or malformed values read as 0."""
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def is_valid_order_id(order_id: str | None) -> bool:
    return bool(order_id) and _ORDER_ID_RE.match(order_id) is not None
