"""
Pure numeric building blocks for forecasting.

Statistical helpers (regression, NPV, IRR, compound growth) work in floats;
money aggregates (burn rate, runway) stay in ``Decimal``. Every division has
an explicit guard so no ``NaN`` or ``ZeroDivisionError`` escapes.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Sequence

import structlog

from fincore.currency_conversion import CurrencyConverter
from fincore.models import MasterTransaction, Transaction, TransactionType

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")
INFINITE_RUNWAY = Decimal("Infinity")
IRR_MAX_ITERATIONS = 20
IRR_TOLERANCE = 1e-7
DERIVATIVE_EPSILON = 1e-12


@dataclass(frozen=True)
class RegressionModel:
    slope: float
    intercept: float

    def predict(self, x: float) -> float:
        return self.slope * x + self.intercept

    @property
    def is_flat(self) -> bool:
        return self.slope == 0


def linear_regression(xs: Sequence[float], ys: Sequence[float]) -> RegressionModel:
    """Ordinary least squares fit of ``ys`` against ``xs``.

    Returns a flat model at the mean of ``ys`` when the fit is undefined
    (no points, or fewer than two distinct x values).
    """
    if len(xs) != len(ys):
        raise ValueError("xs and ys must have the same length.")
    n = len(xs)
    if n == 0:
        return RegressionModel(slope=0.0, intercept=0.0)

    x_values = [float(x) for x in xs]
    y_values = [float(y) for y in ys]
    sum_x = sum(x_values)
    sum_y = sum(y_values)
    sum_xy = sum(x * y for x, y in zip(x_values, y_values))
    sum_xx = sum(x * x for x in x_values)

    denominator = n * sum_xx - sum_x * sum_x
    if abs(denominator) < DERIVATIVE_EPSILON:
        return RegressionModel(slope=0.0, intercept=sum_y / n)

    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n
    return RegressionModel(slope=slope, intercept=intercept)


def future_value(present: float, rate: float, periods: float) -> float:
    return float(present) * (1 + float(rate)) ** periods


def npv(cash_flows: Sequence[float], rate: float) -> float:
    """Discounted sum with the first cash flow one period out."""
    rate = float(rate)
    if rate <= -1:
        raise ValueError("rate must be greater than -1.")
    return sum(float(cf) / (1 + rate) ** (index + 1) for index, cf in enumerate(cash_flows))


def irr(cash_flows: Sequence[float], guess: float = 0.1) -> float:
    """Internal rate of return by Newton-Raphson.

    Stops after ``IRR_MAX_ITERATIONS`` steps, when successive estimates are
    within ``IRR_TOLERANCE``, or when the derivative is too close to zero to
    divide by; the last estimate is returned in every case.
    """
    flows = [float(cf) for cf in cash_flows]
    rate = float(guess)
    if not flows:
        return rate

    for _ in range(IRR_MAX_ITERATIONS):
        if rate <= -1:
            logger.warning("irr_rate_out_of_domain", rate=rate)
            break
        value = npv(flows, rate)
        derivative = sum(
            -(index + 1) * cf / (1 + rate) ** (index + 2) for index, cf in enumerate(flows)
        )
        if abs(derivative) < DERIVATIVE_EPSILON:
            logger.info("irr_flat_derivative", rate=rate)
            break
        next_rate = rate - value / derivative
        if abs(next_rate - rate) < IRR_TOLERANCE:
            rate = next_rate
            break
        rate = next_rate
    return rate


def burn_rate(
    transactions: Iterable[Transaction],
    months: int,
    converter: Optional[CurrencyConverter] = None,
    target_currency: Optional[str] = None,
) -> Decimal:
    """Average monthly expense outflow over ``months``.

    Recurring master templates are excluded; their occurrences count through
    their history records. Amounts are converted when ``converter`` is given.
    """
    if months <= 0:
        raise ValueError("months must be greater than zero.")
    if converter is not None and not target_currency:
        raise ValueError("target_currency is required when converting.")

    total = ZERO
    for txn in transactions:
        if isinstance(txn, MasterTransaction) or txn.type != TransactionType.EXPENSE:
            continue
        amount = abs(txn.amount)
        if converter is not None:
            amount = converter.convert(amount, txn.currency or target_currency, target_currency)
        total += amount
    return total / Decimal(months)


def runway(balance: Decimal | int | float | str, monthly_burn: Decimal | int | float | str) -> Decimal:
    """Months the balance lasts at ``monthly_burn``; infinite when nothing burns."""
    burn = _coerce(monthly_burn)
    if burn == 0:
        return INFINITE_RUNWAY
    return _coerce(balance) / burn


def _coerce(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
