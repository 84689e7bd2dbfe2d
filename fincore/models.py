"""
Record models loaded from and written back to the key-value store.

Transactions are a tagged union on ``kind``: one-time ``single`` records,
recurring ``master`` templates and ``history`` occurrences materialized from a
master. Dates that cannot be parsed load as ``None`` so a single bad record
never aborts loading the collection.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any, Iterable, Literal, Mapping, Optional, Union
from uuid import uuid4

import structlog
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from fincore.settings import get_default_currency

logger = structlog.get_logger(__name__)


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class TransactionPeriod(str, Enum):
    ONE_TIME = "one_time"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    TRANSFER = "transfer"
    CASH = "cash"
    CARD = "card"


PERIOD_ALIASES = {
    "onetime": TransactionPeriod.ONE_TIME,
    "once": TransactionPeriod.ONE_TIME,
    "daily": TransactionPeriod.DAILY,
    "weekly": TransactionPeriod.WEEKLY,
    "monthly": TransactionPeriod.MONTHLY,
    "yearly": TransactionPeriod.YEARLY,
    "annual": TransactionPeriod.YEARLY,
}


def coerce_record_date(value: Any) -> Optional[dt.date]:
    """Return a calendar date for ``value`` or ``None`` when it is unusable."""
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return dt.datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            pass
        try:
            return dt.date.fromisoformat(text[:10])
        except ValueError:
            pass
    logger.warning("unparseable_record_date", value=repr(value))
    return None


def normalize_period(value: Any) -> Any:
    if isinstance(value, TransactionPeriod) or not isinstance(value, str):
        return value
    key = "".join(ch for ch in value.strip().lower() if ch.isalnum())
    return PERIOD_ALIASES.get(key, value)


class TransactionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    amount: Decimal
    type: TransactionType = TransactionType.EXPENSE
    currency: Optional[str] = None
    date: Optional[dt.date] = None
    category: str = "other"
    description: str = ""
    period: TransactionPeriod = TransactionPeriod.ONE_TIME
    interest_rate: Optional[Decimal] = None

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value: Any) -> Optional[dt.date]:
        return coerce_record_date(value)

    @field_validator("period", mode="before")
    @classmethod
    def _parse_period(cls, value: Any) -> Any:
        return normalize_period(value)

    @field_validator("type", mode="before")
    @classmethod
    def _parse_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            normalized = value.strip().lower()
            # subscriptions are stored as their own type by the planner UI
            return "expense" if normalized == "subscription" else normalized
        return value

    @field_validator("currency", mode="before")
    @classmethod
    def _parse_currency(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper() or None
        return value


class SingleTransaction(TransactionBase):
    kind: Literal["single"] = "single"
    recurring: Literal[False] = False


class MasterTransaction(TransactionBase):
    """Recurring template. ``date`` is the next occurrence not yet materialized.

    ``anchor_day`` remembers the day of month the schedule was set up on, so a
    monthly or yearly master moved to a clamped date (Feb 29) returns to the
    31st on later passes. ``None`` means the day of ``date``.
    """

    kind: Literal["master"] = "master"
    recurring: Literal[True] = True
    anchor_day: Optional[int] = Field(default=None, ge=1, le=31)

    @model_validator(mode="after")
    def _check_period(self) -> "MasterTransaction":
        if self.period == TransactionPeriod.ONE_TIME:
            raise ValueError("A recurring master needs a daily, weekly, monthly or yearly period.")
        return self


class HistoryTransaction(TransactionBase):
    kind: Literal["history"] = "history"
    recurring: Literal[False] = False
    origin_id: str


Transaction = Annotated[
    Union[SingleTransaction, MasterTransaction, HistoryTransaction],
    Field(discriminator="kind"),
]

_TRANSACTION_ADAPTER = TypeAdapter(Transaction)


def classify_record(record: Mapping[str, Any]) -> dict[str, Any]:
    """Fill in ``kind`` for legacy records and drop the derived ``recurring`` flag."""
    data = dict(record)
    recurring = bool(data.pop("recurring", False))
    if not data.get("kind"):
        period = normalize_period(data.get("period", TransactionPeriod.ONE_TIME))
        if recurring and period != TransactionPeriod.ONE_TIME:
            data["kind"] = "master"
        else:
            data["kind"] = "single"
    return data


def parse_transaction(record: Mapping[str, Any]) -> Transaction:
    return _TRANSACTION_ADAPTER.validate_python(classify_record(record))


def parse_transactions(records: Iterable[Mapping[str, Any]]) -> list[Transaction]:
    return [parse_transaction(record) for record in records]


def load_transaction_records(
    records: Iterable[Any],
) -> tuple[list[Transaction], list[Any]]:
    """Parse stored records one by one.

    Returns the parsed transactions and the raw records that failed
    validation, which callers keep so they can be written back untouched.
    """
    parsed: list[Transaction] = []
    rejected: list[Any] = []
    for record in records:
        if not isinstance(record, Mapping):
            logger.warning("unparseable_transaction_record", record=repr(record))
            rejected.append(record)
            continue
        try:
            parsed.append(parse_transaction(record))
        except ValidationError as exc:
            logger.warning(
                "unparseable_transaction_record",
                record_id=record.get("id"),
                errors=exc.error_count(),
            )
            rejected.append(record)
    return parsed, rejected


def dump_records(records: Iterable[BaseModel]) -> list[dict[str, Any]]:
    return [record.model_dump(mode="json") for record in records]


class InvoiceLineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    description: str = ""
    quantity: Decimal
    rate: Decimal
    amount: Decimal = Decimal("0")

    @model_validator(mode="before")
    @classmethod
    def _recompute_amount(cls, data: Any) -> Any:
        if not isinstance(data, Mapping) or "quantity" not in data or "rate" not in data:
            return data
        try:
            quantity = Decimal(str(data["quantity"]))
            rate = Decimal(str(data["rate"]))
        except InvalidOperation:
            # field validation reports the bad value
            return data
        return {**data, "amount": quantity * rate}

    def edit(self, **changes: Any) -> "InvoiceLineItem":
        """Return a copy with ``changes`` applied and ``amount`` recomputed."""
        return InvoiceLineItem(**{**self.model_dump(), **changes})


class Invoice(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    invoice_number: str
    client_id: str
    company_profile_id: Optional[str] = None
    items: list[InvoiceLineItem] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    currency: str
    status: InvoiceStatus = InvoiceStatus.DRAFT
    issue_date: Optional[dt.date] = None
    due_date: Optional[dt.date] = None
    fulfillment_date: Optional[dt.date] = None
    paid_date: Optional[dt.date] = None
    payment_method: Optional[PaymentMethod] = None
    notes: str = ""

    @field_validator("issue_date", "due_date", "fulfillment_date", "paid_date", mode="before")
    @classmethod
    def _parse_dates(cls, value: Any) -> Optional[dt.date]:
        return coerce_record_date(value)

    @field_validator("currency", mode="before")
    @classmethod
    def _parse_currency(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class CompanyProfile(BaseModel):
    id: str
    name: str
    tax_id: Optional[str] = None
    address: Optional[str] = None
    default_currency: str = Field(default_factory=get_default_currency)
    default_tax_rate: Decimal = Decimal("0")


_INVOICE_LIST_ADAPTER = TypeAdapter(list[Invoice])


def parse_invoices(records: Iterable[Mapping[str, Any]]) -> list[Invoice]:
    return _INVOICE_LIST_ADAPTER.validate_python(list(records))


def load_invoice_records(records: Iterable[Any]) -> tuple[list[Invoice], list[Any]]:
    """Invoice counterpart of :func:`load_transaction_records`."""
    parsed: list[Invoice] = []
    rejected: list[Any] = []
    for record in records:
        try:
            parsed.append(Invoice.model_validate(record))
        except ValidationError as exc:
            record_id = record.get("id") if isinstance(record, Mapping) else None
            logger.warning("unparseable_invoice_record", record_id=record_id, errors=exc.error_count())
            rejected.append(record)
    return parsed, rejected
