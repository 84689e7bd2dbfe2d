from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, List, Optional, Set

import structlog

from fincore.models import (
    HistoryTransaction,
    MasterTransaction,
    Transaction,
    TransactionPeriod,
)

logger = structlog.get_logger(__name__)

WEEKLY_DAYS = 7
MAX_CATCHUP_ITERATIONS = 120


@dataclass(frozen=True)
class MaterializationResult:
    transactions: List[Transaction]
    created: List[HistoryTransaction] = field(default_factory=list)
    capped: List[str] = field(default_factory=list)
    reentrant: bool = False


class RecurringMaterializer:
    """Expands recurring masters into dated history occurrences up to today.

    Each pass emits one history record per elapsed occurrence, keyed
    ``{master_id}_{YYYY-MM-DD}`` so a (master, date) pair is only ever
    materialized once, then moves the master's date to its next future
    occurrence. A pass never re-enters itself.
    """

    def __init__(
        self,
        max_iterations: int = MAX_CATCHUP_ITERATIONS,
        skipped_ids: Iterable[str] = (),
    ) -> None:
        if max_iterations <= 0:
            raise ValueError("max_iterations must be greater than zero.")
        self.max_iterations = max_iterations
        self._skipped: Set[str] = set(skipped_ids)
        self._in_progress = False

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    @property
    def skipped_ids(self) -> Set[str]:
        return set(self._skipped)

    def skip(self, history_id: str) -> None:
        """Never regenerate ``history_id``, e.g. after the user deleted it."""
        self._skipped.add(history_id)

    def materialize(
        self,
        transactions: Iterable[Transaction],
        today: date | None = None,
    ) -> MaterializationResult:
        if self._in_progress:
            logger.debug("recurring_pass_reentry_ignored")
            return MaterializationResult(transactions=list(transactions), reentrant=True)

        self._in_progress = True
        try:
            return self._run(list(transactions), today or date.today())
        finally:
            self._in_progress = False

    def _run(self, transactions: List[Transaction], today: date) -> MaterializationResult:
        existing_ids = {txn.id for txn in transactions}
        updated: List[Transaction] = []
        created: List[HistoryTransaction] = []
        capped: List[str] = []

        for txn in transactions:
            if not isinstance(txn, MasterTransaction):
                updated.append(txn)
                continue
            if txn.date is None:
                logger.warning("recurring_master_without_date", master_id=txn.id)
                updated.append(txn)
                continue

            anchor_day = txn.anchor_day or txn.date.day
            next_date, occurrences = self._catch_up(txn, anchor_day, today, existing_ids)
            created.extend(occurrences)
            if next_date <= today:
                capped.append(txn.id)
                logger.info(
                    "recurring_catch_up_capped",
                    master_id=txn.id,
                    resume_from=next_date.isoformat(),
                    max_iterations=self.max_iterations,
                )
            if next_date == txn.date:
                updated.append(txn)
            else:
                updated.append(txn.model_copy(update={"date": next_date, "anchor_day": anchor_day}))

        if created:
            logger.info("recurring_history_created", count=len(created), today=today.isoformat())
        return MaterializationResult(
            transactions=updated + created,
            created=created,
            capped=capped,
        )

    def _catch_up(
        self,
        master: MasterTransaction,
        anchor_day: int,
        today: date,
        existing_ids: Set[str],
    ) -> tuple[date, List[HistoryTransaction]]:
        anchor = master.date
        snapshot = master.model_dump(exclude={"id", "date", "kind", "recurring", "anchor_day"})
        occurrences: List[HistoryTransaction] = []
        cursor = anchor
        steps = 0
        while cursor <= today and steps < self.max_iterations:
            history_id = history_id_for(master.id, cursor)
            if history_id not in existing_ids and history_id not in self._skipped:
                existing_ids.add(history_id)
                occurrences.append(
                    HistoryTransaction(
                        **snapshot,
                        id=history_id,
                        date=cursor,
                        origin_id=master.id,
                    )
                )
            steps += 1
            cursor = occurrence_date(anchor, master.period, steps, anchor_day)
        return cursor, occurrences


def history_id_for(master_id: str, occurrence: date) -> str:
    return f"{master_id}_{occurrence.isoformat()}"


def occurrence_date(
    anchor: date,
    period: TransactionPeriod,
    steps: int,
    anchor_day: Optional[int] = None,
) -> date:
    """Date of the ``steps``-th occurrence after ``anchor``.

    Monthly and yearly steps land on ``anchor_day`` (default: the anchor's
    day), clamped to the length of the month, so a schedule on the 31st
    neither drifts within a pass nor across passes.
    """
    day = anchor_day or anchor.day
    if period == TransactionPeriod.DAILY:
        return anchor + timedelta(days=steps)
    if period == TransactionPeriod.WEEKLY:
        return anchor + timedelta(days=WEEKLY_DAYS * steps)
    if period == TransactionPeriod.MONTHLY:
        return _add_months(anchor, steps, day)
    if period == TransactionPeriod.YEARLY:
        return _add_months(anchor, 12 * steps, day)
    raise ValueError(f"Unsupported recurrence period: {period}")


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)
