from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Collection, Iterable, Optional, Union

from fincore.currency_conversion import CurrencyConverter
from fincore.models import Invoice, InvoiceStatus

ZERO = Decimal("0")

# Revenue predicates. Each status belongs to at most one of paid/pending/overdue;
# drafts and cancelled invoices never count as revenue.
TOTAL_INVOICED_STATUSES = frozenset(
    {InvoiceStatus.PAID, InvoiceStatus.SENT, InvoiceStatus.OVERDUE}
)
PAID_STATUSES = frozenset({InvoiceStatus.PAID})
PENDING_STATUSES = frozenset({InvoiceStatus.SENT})
OVERDUE_STATUSES = frozenset({InvoiceStatus.OVERDUE})

StatusFilter = Optional[Union[InvoiceStatus, str, Collection[Union[InvoiceStatus, str]]]]


@dataclass(frozen=True)
class RevenueSummary:
    currency: str
    total_invoiced: Decimal
    paid: Decimal
    pending: Decimal
    overdue: Decimal


def total_by_status(
    invoices: Iterable[Invoice],
    status: StatusFilter,
    target_currency: str,
    converter: CurrencyConverter,
) -> Decimal:
    """Sum invoice totals in ``target_currency``; each invoice is converted before summing."""
    statuses = _normalize_statuses(status)
    total = ZERO
    for invoice in invoices:
        if statuses is not None and invoice.status not in statuses:
            continue
        total += converter.convert(
            invoice.total,
            invoice.currency or target_currency,
            target_currency,
        )
    return total


def breakdown_by_currency(
    invoices: Iterable[Invoice],
    status: StatusFilter = None,
) -> dict[str, Decimal]:
    """Group native invoice totals by currency without converting them."""
    statuses = _normalize_statuses(status)
    result: dict[str, Decimal] = {}
    for invoice in invoices:
        if statuses is not None and invoice.status not in statuses:
            continue
        currency = invoice.currency or "USD"
        result[currency] = result.get(currency, ZERO) + invoice.total
    return result


def total_invoiced(invoices: Iterable[Invoice], target_currency: str, converter: CurrencyConverter) -> Decimal:
    return total_by_status(invoices, TOTAL_INVOICED_STATUSES, target_currency, converter)


def paid_total(invoices: Iterable[Invoice], target_currency: str, converter: CurrencyConverter) -> Decimal:
    return total_by_status(invoices, PAID_STATUSES, target_currency, converter)


def pending_total(invoices: Iterable[Invoice], target_currency: str, converter: CurrencyConverter) -> Decimal:
    return total_by_status(invoices, PENDING_STATUSES, target_currency, converter)


def overdue_total(invoices: Iterable[Invoice], target_currency: str, converter: CurrencyConverter) -> Decimal:
    return total_by_status(invoices, OVERDUE_STATUSES, target_currency, converter)


def revenue_summary(
    invoices: Iterable[Invoice],
    target_currency: str,
    converter: CurrencyConverter,
) -> RevenueSummary:
    snapshot = list(invoices)
    return RevenueSummary(
        currency=target_currency,
        total_invoiced=total_invoiced(snapshot, target_currency, converter),
        paid=paid_total(snapshot, target_currency, converter),
        pending=pending_total(snapshot, target_currency, converter),
        overdue=overdue_total(snapshot, target_currency, converter),
    )


def _normalize_statuses(status: StatusFilter) -> frozenset[InvoiceStatus] | None:
    if status is None:
        return None
    if isinstance(status, (InvoiceStatus, str)):
        return frozenset({InvoiceStatus(status)})
    return frozenset(InvoiceStatus(value) for value in status)
