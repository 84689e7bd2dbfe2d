from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

import structlog

from fincore.currency_conversion import CurrencyConverter
from fincore.financial_math import linear_regression, runway
from fincore.models import (
    Invoice,
    InvoiceStatus,
    MasterTransaction,
    Transaction,
    TransactionPeriod,
    TransactionType,
)

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")
HISTORY_MONTHS = 6
TRAILING_MONTHS = 4
# (multiplier, divisor) turning one occurrence into a monthly amount
MONTHLY_EQUIVALENTS = {
    TransactionPeriod.DAILY: (Decimal("30"), Decimal("1")),
    TransactionPeriod.WEEKLY: (Decimal("4"), Decimal("1")),
    TransactionPeriod.MONTHLY: (Decimal("1"), Decimal("1")),
    TransactionPeriod.YEARLY: (Decimal("1"), Decimal("12")),
}


@dataclass(frozen=True)
class ForecastPoint:
    period_label: str
    actual: Optional[int]
    predicted: Optional[int]


@dataclass(frozen=True)
class ForecastBundle:
    labels: List[str]
    actual: List[Optional[int]]
    predicted: List[Optional[int]]

    def points(self) -> List[ForecastPoint]:
        return [
            ForecastPoint(label, actual, predicted)
            for label, actual, predicted in zip(self.labels, self.actual, self.predicted)
        ]


@dataclass(frozen=True)
class FinancialReport:
    currency: str
    current_balance: Decimal
    recurring_income: Decimal
    recurring_expenses: Decimal
    monthly_net: Decimal
    monthly_burn: Decimal
    avg_interest_rate: Decimal
    runway_months: Optional[int]
    projected_3_months: Decimal
    projected_1_year: Decimal
    projected_3_years: Decimal


def generate_forecast(
    invoices: Iterable[Invoice],
    target_currency: str,
    converter: CurrencyConverter,
    month_count: int = 6,
    today: Optional[date] = None,
) -> ForecastBundle:
    """Paid revenue per month plus a linear trend projected ``month_count`` months ahead.

    The trend is fitted on the non-empty months of the last ``HISTORY_MONTHS``
    months. Labels cover the trailing ``TRAILING_MONTHS`` months (current month
    included) and the forecast horizon. Past months carry their observed total
    (0 when nothing was paid); future months have no actual value.
    """
    if month_count < 0:
        raise ValueError("month_count must not be negative.")
    current = month_start(today or date.today())
    monthly = paid_revenue_by_month(invoices, target_currency, converter)

    history = [shift_month(current, -offset) for offset in range(HISTORY_MONTHS - 1, -1, -1)]
    xs: List[float] = []
    ys: List[float] = []
    for x, month in enumerate(history):
        value = monthly.get(month, ZERO)
        if value != ZERO:
            xs.append(float(x))
            ys.append(float(value))
    model = linear_regression(xs, ys)

    labels: List[str] = []
    actual: List[Optional[int]] = []
    predicted: List[Optional[int]] = []
    for offset in range(1 - TRAILING_MONTHS, month_count + 1):
        month = shift_month(current, offset)
        labels.append(month.strftime("%b %y"))
        actual.append(_whole(monthly.get(month, ZERO)) if offset <= 0 else None)
        estimate = model.predict(HISTORY_MONTHS - 1 + offset)
        predicted.append(max(0, _whole(Decimal(str(estimate)))))
    return ForecastBundle(labels=labels, actual=actual, predicted=predicted)


def paid_revenue_by_month(
    invoices: Iterable[Invoice],
    target_currency: str,
    converter: CurrencyConverter,
) -> dict[date, Decimal]:
    totals: dict[date, Decimal] = {}
    for invoice in invoices:
        if invoice.status != InvoiceStatus.PAID:
            continue
        if invoice.issue_date is None:
            logger.debug("forecast_invoice_without_issue_date", invoice_id=invoice.id)
            continue
        month = month_start(invoice.issue_date)
        converted = converter.convert(invoice.total, invoice.currency or target_currency, target_currency)
        totals[month] = totals.get(month, ZERO) + converted
    return totals


def current_balance(
    transactions: Iterable[Transaction],
    target_currency: str,
    converter: CurrencyConverter,
    today: Optional[date] = None,
) -> Decimal:
    """Cash balance: income minus expenses, excluding templates and future-dated records."""
    cutoff = today or date.today()
    balance = ZERO
    for txn in transactions:
        if isinstance(txn, MasterTransaction):
            continue
        if txn.date is not None and txn.date > cutoff:
            continue
        amount = abs(txn.amount)
        if txn.type == TransactionType.EXPENSE:
            amount = -amount
        balance += converter.convert(amount, txn.currency or target_currency, target_currency)
    return balance


def monthly_recurring(
    transactions: Iterable[Transaction],
    transaction_type: TransactionType,
    target_currency: str,
    converter: CurrencyConverter,
) -> Decimal:
    """Monthly equivalent of recurring masters of one type."""
    total = ZERO
    for txn in transactions:
        if not isinstance(txn, MasterTransaction) or txn.type != transaction_type:
            continue
        amount = converter.convert(abs(txn.amount), txn.currency or target_currency, target_currency)
        multiplier, divisor = MONTHLY_EQUIVALENTS[txn.period]
        total += amount * multiplier / divisor
    return total


def future_balance(
    balance: Decimal,
    monthly_net: Decimal,
    months: int,
    annual_interest_rate: Decimal = ZERO,
) -> Decimal:
    """Balance after ``months`` of ``monthly_net`` contributions with monthly compounding."""
    monthly_rate = Decimal(annual_interest_rate) / Decimal(100) / Decimal(12)
    if monthly_rate == 0:
        return balance + monthly_net * months
    growth = (1 + monthly_rate) ** months
    return balance * growth + monthly_net * ((growth - 1) / monthly_rate)


def transaction_amounts_by_currency(
    transactions: Iterable[Transaction],
    transaction_type: TransactionType,
) -> dict[str, Decimal]:
    result: dict[str, Decimal] = {}
    for txn in transactions:
        if isinstance(txn, MasterTransaction) or txn.type != transaction_type:
            continue
        currency = txn.currency or "USD"
        result[currency] = result.get(currency, ZERO) + abs(txn.amount)
    return result


def financial_report(
    transactions: Iterable[Transaction],
    target_currency: str,
    converter: CurrencyConverter,
    today: Optional[date] = None,
) -> FinancialReport:
    snapshot = list(transactions)
    balance = current_balance(snapshot, target_currency, converter, today=today)
    income = monthly_recurring(snapshot, TransactionType.INCOME, target_currency, converter)
    expenses = monthly_recurring(snapshot, TransactionType.EXPENSE, target_currency, converter)
    monthly_net = income - expenses
    interest = weighted_interest_rate(snapshot, target_currency, converter)

    months_left = runway(balance, expenses)
    runway_months = None
    if months_left.is_finite():
        runway_months = int(months_left.to_integral_value(rounding=ROUND_FLOOR))

    return FinancialReport(
        currency=target_currency,
        current_balance=balance,
        recurring_income=income,
        recurring_expenses=expenses,
        monthly_net=monthly_net,
        monthly_burn=expenses,
        avg_interest_rate=interest,
        runway_months=runway_months,
        projected_3_months=future_balance(balance, monthly_net, 3, interest),
        projected_1_year=future_balance(balance, monthly_net, 12, interest),
        projected_3_years=future_balance(balance, monthly_net, 36, interest),
    )


def weighted_interest_rate(
    transactions: Iterable[Transaction],
    target_currency: str,
    converter: CurrencyConverter,
) -> Decimal:
    """Amount-weighted average annual interest rate of interest-bearing income."""
    weighted = ZERO
    total = ZERO
    for txn in transactions:
        if txn.type != TransactionType.INCOME or not txn.interest_rate:
            continue
        amount = converter.convert(txn.amount, txn.currency or target_currency, target_currency)
        weighted += amount * txn.interest_rate
        total += amount
    if total <= 0:
        return ZERO
    return weighted / total


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def _whole(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
