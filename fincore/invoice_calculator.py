from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping, Optional, Union
from uuid import uuid4

import structlog

from fincore.models import CompanyProfile, Invoice, InvoiceLineItem, InvoiceStatus
from fincore.sequence_service import InvoiceSequence

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
ZERO_DECIMAL_CURRENCIES = frozenset({"HUF", "JPY", "KRW", "ISK", "CLP", "VND"})

LineItemLike = Union[InvoiceLineItem, Mapping[str, Any]]


@dataclass(frozen=True)
class InvoiceTotals:
    """Rounded invoice totals.

    Subtotal, tax and total are rounded independently, so ``subtotal + tax``
    may differ from ``total`` by one minor unit. That is intended.
    """

    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    fraction_digits: int


def fraction_digits(currency: str) -> int:
    return 0 if currency.strip().upper() in ZERO_DECIMAL_CURRENCIES else 2


def calculate_totals(
    items: Iterable[LineItemLike],
    tax_rate: Decimal | int | float | str,
    currency: str,
    discount: Decimal | int | float | str = 0,
) -> InvoiceTotals:
    digits = fraction_digits(currency)
    subtotal = sum((_value(item, "quantity") * _value(item, "rate") for item in items), ZERO)
    taxable = max(ZERO, subtotal - _coerce(discount))
    tax_amount = taxable * _coerce(tax_rate) / HUNDRED
    total = taxable + tax_amount
    return InvoiceTotals(
        subtotal=round_money(subtotal, digits),
        tax_amount=round_money(tax_amount, digits),
        total=round_money(total, digits),
        fraction_digits=digits,
    )


def round_money(value: Decimal, digits: int) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP)


def apply_totals(invoice: Invoice, discount: Decimal | int | float | str = 0) -> Invoice:
    """Return ``invoice`` with subtotal, tax and total recomputed from its items."""
    totals = calculate_totals(invoice.items, invoice.tax_rate, invoice.currency, discount)
    return invoice.model_copy(
        update={"subtotal": totals.subtotal, "tax": totals.tax_amount, "total": totals.total}
    )


def build_invoice(
    profile: CompanyProfile,
    client_id: str,
    items: Iterable[LineItemLike],
    sequence: InvoiceSequence,
    issue_date: date,
    due_date: Optional[date] = None,
    tax_rate: Decimal | int | float | str | None = None,
    currency: Optional[str] = None,
    discount: Decimal | int | float | str = 0,
    **fields: Any,
) -> Invoice:
    """Create a draft invoice, drawing exactly one number from ``sequence``.

    Numbers drawn for invoices that are later discarded are not returned to
    the sequence; the gap is permanent.
    """
    line_items = [item if isinstance(item, InvoiceLineItem) else InvoiceLineItem(**item) for item in items]
    invoice_currency = (currency or profile.default_currency).strip().upper()
    rate = _coerce(tax_rate if tax_rate is not None else profile.default_tax_rate)
    totals = calculate_totals(line_items, rate, invoice_currency, discount)

    number = sequence.next_invoice_number(profile.id, issue_date.year)
    invoice = Invoice(
        id=fields.pop("id", None) or uuid4().hex,
        invoice_number=number,
        client_id=client_id,
        company_profile_id=profile.id,
        items=line_items,
        subtotal=totals.subtotal,
        tax_rate=rate,
        tax=totals.tax_amount,
        total=totals.total,
        currency=invoice_currency,
        status=fields.pop("status", InvoiceStatus.DRAFT),
        issue_date=issue_date,
        due_date=due_date,
        **fields,
    )
    logger.info("invoice_built", invoice_number=number, company_id=profile.id, total=str(totals.total))
    return invoice


def _value(item: LineItemLike, name: str) -> Decimal:
    raw = item[name] if isinstance(item, Mapping) else getattr(item, name)
    return _coerce(raw)


def _coerce(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
