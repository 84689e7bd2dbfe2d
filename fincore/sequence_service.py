from __future__ import annotations

from datetime import date
from typing import Optional

import structlog

from fincore.storage import KeyValueStore

logger = structlog.get_logger(__name__)

SEQUENCE_KEY_PREFIX = "invoice_sequence_"
DEFAULT_COMPANY_ID = "default"


class InvoiceSequence:
    """Gapless-by-construction invoice numbers per (company, year).

    Every call to :meth:`next_invoice_number` consumes a number for good, so
    call it once per created invoice. A number drawn and then thrown away
    leaves a permanent gap.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def next_invoice_number(
        self,
        company_id: str = DEFAULT_COMPANY_ID,
        year: Optional[int] = None,
    ) -> str:
        year = year if year is not None else date.today().year
        key = sequence_key(company_id, year)
        sequence = self._read(key) + 1
        self.store.set(key, sequence)
        logger.debug("invoice_sequence_advanced", company_id=company_id, year=year, sequence=sequence)
        return format_invoice_number(year, sequence)

    def current_sequence(
        self,
        company_id: str = DEFAULT_COMPANY_ID,
        year: Optional[int] = None,
    ) -> int:
        year = year if year is not None else date.today().year
        return self._read(sequence_key(company_id, year))

    def _read(self, key: str) -> int:
        raw = self.store.get(key, 0)
        try:
            return int(raw)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Corrupt invoice sequence under {key!r}: {raw!r}") from exc


def sequence_key(company_id: str, year: int) -> str:
    return f"{SEQUENCE_KEY_PREFIX}{company_id}_{year}"


def format_invoice_number(year: int, sequence: int) -> str:
    return f"INV-{year}-{sequence:04d}"
