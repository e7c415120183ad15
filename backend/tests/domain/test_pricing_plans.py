"""Tests for pricing plan helpers."""

import pytest

from tablexport.paypal.plans import (
    PRICING_PLANS,
    format_amount,
    get_paid_plan,
    is_valid_order_id,
    parse_amount,
)

pytestmark = pytest.mark.unit


def test_pro_plan_is_paid():
    plan = get_paid_plan("pro")

    assert plan is PRICING_PLANS["pro"]
    assert plan.price == 5.00
    assert plan.currency == "USD"


@pytest.mark.parametrize("plan_type", ["free", "enterprise", "", None])
def test_free_or_unknown_plans_cannot_be_ordered(plan_type):
    assert get_paid_plan(plan_type) is None


def test_format_amount_uses_two_decimals():
    assert format_amount(5) == "5.00"
    assert format_amount(4.5) == "4.50"


@pytest.mark.parametrize(("raw", "expected"), [("5.00", 5.0), (None, 0.0), ("abc", 0.0), (3, 3.0)])
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


@pytest.mark.parametrize(
    ("order_id", "valid"),
    [
        ("5O190127TN364715T", True),
        ("5o190127tn364715t", False),
        ("5O190127TN36471", False),
        ("5O190127TN364715T-", False),
        ("", False),
        (None, False),
    ],
)
def test_order_id_format(order_id, valid):
    assert is_valid_order_id(order_id) is valid
