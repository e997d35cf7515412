"""
Threshold rule deciding when a newly observed price is worth an alert.

Pure functions over Decimal so the results can be asserted exactly.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

Number = Union[Decimal, int, float, str]

HUNDRED = Decimal(100)
CENTS = Decimal("0.01")


def _dec(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass
class AlertDecision:
    should_alert: bool
    current_price: Decimal
    average_price: Decimal
    threshold_price: Decimal
    percent_change: Decimal  # negative = below average
    reason: str


def calculate_threshold_price(average_price: Number, threshold_percent: Number) -> Decimal:
    """average * (1 - threshold_percent / 100)"""
    return _dec(average_price) * (1 - _dec(threshold_percent) / HUNDRED)


def calculate_percent_change(current_price: Number, average_price: Number) -> Decimal:
    """
    Signed change of current vs average, in percent.

    Returns Decimal(0) when there is no meaningful average to compare against.
    """
    average = _dec(average_price)
    if average <= 0:
        return Decimal(0)
    return (_dec(current_price) - average) / average * HUNDRED


def should_alert(current_price: Number, average_price: Number, threshold_percent: Number) -> bool:
    """Strictly below the threshold price. Equal to it is not a drop worth reporting."""
    if _dec(average_price) <= 0:
        return False
    return _dec(current_price) < calculate_threshold_price(average_price, threshold_percent)


def evaluate_price(current_price: Number, average_price: Number, threshold_percent: Number) -> AlertDecision:
    current = _dec(current_price)
    average = _dec(average_price)
    threshold_price = calculate_threshold_price(average, threshold_percent)
    percent_change = calculate_percent_change(current, average)

    if average <= 0:
        reason = "No price history to compare against"
        alert = False
    elif current < threshold_price:
        reason = (
            f"{current} is {abs(percent_change):.1f}% below the average {average:.2f} "
            f"(threshold {threshold_price:.2f})"
        )
        alert = True
    else:
        reason = f"{current} is not below the threshold {threshold_price:.2f}"
        alert = False

    return AlertDecision(
        should_alert=alert,
        current_price=current,
        average_price=average,
        threshold_price=threshold_price,
        percent_change=percent_change,
        reason=reason,
    )
