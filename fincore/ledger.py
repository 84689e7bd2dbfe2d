"""
Finance ledger: the owner of the record collections for one session.

The recurring materializer runs as an explicit step once per external event
(load, adding or deleting a transaction) instead of reacting to its own
writes. Each mutation persists the affected blobs to the key-value store.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Iterable, List, Mapping, Optional

import structlog

from fincore.currency_conversion import CurrencyConverter, load_rate_table
from fincore.forecasting import FinancialReport, ForecastBundle, financial_report, generate_forecast
from fincore.invoice_aggregation import RevenueSummary, revenue_summary
from fincore.logging_setup import configure_logging
from fincore.models import (
    HistoryTransaction,
    Invoice,
    MasterTransaction,
    Transaction,
    dump_records,
    load_invoice_records,
    load_transaction_records,
    parse_transaction,
)
from fincore.recurring_materializer import MaterializationResult, RecurringMaterializer
from fincore.sequence_service import InvoiceSequence
from fincore.storage import KeyValueStore, SqlKeyValueStore

logger = structlog.get_logger(__name__)

TRANSACTIONS_KEY = "transactions"
INVOICES_KEY = "invoices"
SKIPS_KEY = "recurring-skips"


class FinanceLedger:
    def __init__(
        self,
        store: KeyValueStore,
        converter: CurrencyConverter,
        materializer: Optional[RecurringMaterializer] = None,
    ) -> None:
        self.store = store
        self.converter = converter
        self.materializer = materializer or RecurringMaterializer()
        self.sequence = InvoiceSequence(store)
        self._transactions: List[Transaction] = []
        self._invoices: List[Invoice] = []
        # stored records that failed validation; written back as they were
        self._unparsed_transactions: List[Any] = []
        self._unparsed_invoices: List[Any] = []

    @classmethod
    def from_settings(cls, database_url: Optional[str] = None) -> "FinanceLedger":
        """Build a ledger on the configured SQL store with its persisted rate table."""
        configure_logging()
        store = SqlKeyValueStore.from_url(database_url)
        return cls(store, CurrencyConverter(load_rate_table(store)))

    @property
    def transactions(self) -> List[Transaction]:
        return list(self._transactions)

    @property
    def invoices(self) -> List[Invoice]:
        return list(self._invoices)

    def load(self, today: Optional[date] = None) -> MaterializationResult:
        for history_id in self.store.get(SKIPS_KEY, []):
            self.materializer.skip(history_id)
        self._transactions, self._unparsed_transactions = load_transaction_records(
            self.store.get(TRANSACTIONS_KEY, [])
        )
        self._invoices, self._unparsed_invoices = load_invoice_records(self.store.get(INVOICES_KEY, []))
        logger.info(
            "ledger_loaded",
            transactions=len(self._transactions),
            invoices=len(self._invoices),
            unparsed=len(self._unparsed_transactions) + len(self._unparsed_invoices),
        )
        return self._sync_recurring(today, force_persist=False)

    def add_transaction(
        self,
        record: Transaction | Mapping[str, Any],
        today: Optional[date] = None,
    ) -> Transaction:
        txn = record if not isinstance(record, Mapping) else parse_transaction(record)
        if txn.id in self._transaction_ids():
            raise ValueError(f"Transaction {txn.id!r} already exists.")
        self._transactions.append(txn)
        if isinstance(txn, MasterTransaction):
            self._sync_recurring(today)
        else:
            self._persist_transactions()
        return txn

    def delete_transaction(self, transaction_id: str, today: Optional[date] = None) -> bool:
        """Delete a record; deleting a master also deletes its history.

        A deleted history occurrence is remembered so it is not regenerated.
        """
        target = next((txn for txn in self._transactions if txn.id == transaction_id), None)
        if target is None:
            return False

        if isinstance(target, MasterTransaction):
            self._transactions = [
                txn
                for txn in self._transactions
                if txn.id != transaction_id
                and not (isinstance(txn, HistoryTransaction) and txn.origin_id == transaction_id)
            ]
            self._persist_transactions()
            self._sync_recurring(today, force_persist=False)
            return True

        self._transactions = [txn for txn in self._transactions if txn.id != transaction_id]
        if isinstance(target, HistoryTransaction):
            self.materializer.skip(target.id)
            self.store.set(SKIPS_KEY, sorted(self.materializer.skipped_ids))
        self._persist_transactions()
        return True

    def add_invoice(self, invoice: Invoice) -> Invoice:
        if invoice.id in _raw_ids(self._unparsed_invoices) or any(
            existing.id == invoice.id for existing in self._invoices
        ):
            raise ValueError(f"Invoice {invoice.id!r} already exists.")
        self._invoices.append(invoice)
        self._persist_invoices()
        return invoice

    def replace_invoice(self, invoice: Invoice) -> Invoice:
        for index, existing in enumerate(self._invoices):
            if existing.id == invoice.id:
                self._invoices[index] = invoice
                self._persist_invoices()
                return invoice
        raise ValueError(f"Invoice {invoice.id!r} not found.")

    def revenue_summary(self, target_currency: str) -> RevenueSummary:
        return revenue_summary(self._invoices, target_currency, self.converter)

    def forecast(
        self,
        target_currency: str,
        month_count: int = 6,
        today: Optional[date] = None,
    ) -> ForecastBundle:
        return generate_forecast(self._invoices, target_currency, self.converter, month_count, today=today)

    def report(self, target_currency: str, today: Optional[date] = None) -> FinancialReport:
        return financial_report(self._transactions, target_currency, self.converter, today=today)

    def _sync_recurring(self, today: Optional[date], force_persist: bool = True) -> MaterializationResult:
        result = self.materializer.materialize(self._transactions, today=today)
        if result.reentrant:
            return result
        changed = result.created or _dates_changed(self._transactions, result.transactions)
        self._transactions = result.transactions
        if changed or force_persist:
            self._persist_transactions()
        return result

    def _transaction_ids(self) -> set:
        return {txn.id for txn in self._transactions} | _raw_ids(self._unparsed_transactions)

    def _persist_transactions(self) -> None:
        self.store.set(TRANSACTIONS_KEY, dump_records(self._transactions) + self._unparsed_transactions)

    def _persist_invoices(self) -> None:
        self.store.set(INVOICES_KEY, dump_records(self._invoices) + self._unparsed_invoices)


def _dates_changed(before: Iterable[Transaction], after: Iterable[Transaction]) -> bool:
    previous = {txn.id: txn.date for txn in before}
    return any(previous.get(txn.id) != txn.date for txn in after)


def _raw_ids(records: Iterable[Any]) -> set:
    return {record.get("id") for record in records if isinstance(record, Mapping)}
