import unittest
from datetime import date
from decimal import Decimal

from fincore.models import (
    HistoryTransaction,
    MasterTransaction,
    SingleTransaction,
    TransactionPeriod,
    TransactionType,
)
from fincore.recurring_materializer import (
    RecurringMaterializer,
    history_id_for,
    occurrence_date,
)


def make_master(
    master_id: str = "rent",
    anchor: date = date(2024, 1, 15),
    period: TransactionPeriod = TransactionPeriod.MONTHLY,
) -> MasterTransaction:
    return MasterTransaction(
        id=master_id,
        amount=Decimal("950"),
        type=TransactionType.EXPENSE,
        currency="EUR",
        date=anchor,
        category="housing",
        description="Rent",
        period=period,
    )


class ReentrantInput:
    """Iterable that triggers a nested pass the first time it is iterated."""

    def __init__(self, materializer: RecurringMaterializer, records: list) -> None:
        self.materializer = materializer
        self.records = records
        self.nested = None

    def __iter__(self):
        if self.nested is None:
            self.nested = "running"
            self.nested = self.materializer.materialize(self.records, today=date(2024, 4, 14))
        return iter(self.records)


class RecurringMaterializerTests(unittest.TestCase):
    def test_monthly_master_catches_up_and_advances(self) -> None:
        result = RecurringMaterializer().materialize([make_master()], today=date(2024, 4, 14))

        self.assertEqual(
            [txn.date for txn in result.created],
            [date(2024, 1, 15), date(2024, 2, 15), date(2024, 3, 15)],
        )
        self.assertEqual(
            [txn.id for txn in result.created],
            ["rent_2024-01-15", "rent_2024-02-15", "rent_2024-03-15"],
        )
        master = result.transactions[0]
        self.assertIsInstance(master, MasterTransaction)
        self.assertEqual(master.date, date(2024, 4, 15))
        self.assertEqual(result.capped, [])

    def test_occurrence_on_today_is_materialized(self) -> None:
        result = RecurringMaterializer().materialize([make_master()], today=date(2024, 4, 20))

        self.assertEqual(len(result.created), 4)
        self.assertEqual(result.created[-1].date, date(2024, 4, 15))
        self.assertEqual(result.transactions[0].date, date(2024, 5, 15))

    def test_history_is_an_immutable_snapshot_of_the_master(self) -> None:
        result = RecurringMaterializer().materialize([make_master()], today=date(2024, 1, 20))

        (history,) = result.created
        self.assertIsInstance(history, HistoryTransaction)
        self.assertEqual(history.origin_id, "rent")
        self.assertFalse(history.recurring)
        self.assertEqual(history.amount, Decimal("950"))
        self.assertEqual(history.currency, "EUR")
        self.assertEqual(history.category, "housing")

    def test_second_pass_is_idempotent(self) -> None:
        materializer = RecurringMaterializer()
        first = materializer.materialize(
            [make_master(), SingleTransaction(id="coffee", amount=Decimal("3"), date=date(2024, 2, 1))],
            today=date(2024, 4, 14),
        )

        second = materializer.materialize(first.transactions, today=date(2024, 4, 14))

        self.assertEqual(second.created, [])
        self.assertEqual(second.transactions, first.transactions)

    def test_existing_occurrence_is_not_duplicated(self) -> None:
        existing = HistoryTransaction(
            id=history_id_for("rent", date(2024, 2, 15)),
            origin_id="rent",
            amount=Decimal("950"),
            date=date(2024, 2, 15),
        )

        result = RecurringMaterializer().materialize([make_master(), existing], today=date(2024, 4, 14))

        self.assertEqual(
            [txn.date for txn in result.created],
            [date(2024, 1, 15), date(2024, 3, 15)],
        )
        ids = [txn.id for txn in result.transactions]
        self.assertEqual(len(ids), len(set(ids)))

    def test_skipped_occurrence_is_not_regenerated(self) -> None:
        materializer = RecurringMaterializer(skipped_ids={"rent_2024-02-15"})

        result = materializer.materialize([make_master()], today=date(2024, 4, 14))

        self.assertEqual(
            [txn.date for txn in result.created],
            [date(2024, 1, 15), date(2024, 3, 15)],
        )
        self.assertEqual(result.transactions[0].date, date(2024, 4, 15))

    def test_month_end_anchor_clamps_without_drift(self) -> None:
        master = make_master(anchor=date(2024, 1, 31))

        result = RecurringMaterializer().materialize([master], today=date(2024, 4, 30))

        self.assertEqual(
            [txn.date for txn in result.created],
            [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)],
        )
        self.assertEqual(result.transactions[0].date, date(2024, 5, 31))

    def test_month_end_anchor_survives_separate_passes(self) -> None:
        materializer = RecurringMaterializer()
        first = materializer.materialize([make_master(anchor=date(2024, 1, 31))], today=date(2024, 2, 15))

        master = first.transactions[0]
        self.assertEqual(master.date, date(2024, 2, 29))
        self.assertEqual(master.anchor_day, 31)

        second = materializer.materialize(first.transactions, today=date(2024, 4, 30))

        self.assertEqual(
            [txn.date for txn in first.created + second.created],
            [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)],
        )
        self.assertEqual(second.transactions[0].date, date(2024, 5, 31))
        self.assertNotIn("anchor_day", second.created[0].model_dump())

    def test_weekly_daily_and_yearly_periods(self) -> None:
        self.assertEqual(occurrence_date(date(2024, 1, 1), TransactionPeriod.DAILY, 3), date(2024, 1, 4))
        self.assertEqual(occurrence_date(date(2024, 1, 1), TransactionPeriod.WEEKLY, 2), date(2024, 1, 15))
        self.assertEqual(occurrence_date(date(2024, 2, 29), TransactionPeriod.YEARLY, 1), date(2025, 2, 28))
        self.assertEqual(
            occurrence_date(date(2024, 2, 29), TransactionPeriod.MONTHLY, 1, anchor_day=31),
            date(2024, 3, 31),
        )

        weekly = make_master("gym", date(2024, 3, 1), TransactionPeriod.WEEKLY)
        result = RecurringMaterializer().materialize([weekly], today=date(2024, 3, 20))

        self.assertEqual(
            [txn.date for txn in result.created],
            [date(2024, 3, 1), date(2024, 3, 8), date(2024, 3, 15)],
        )
        self.assertEqual(result.transactions[0].date, date(2024, 3, 22))

    def test_future_master_is_left_alone(self) -> None:
        master = make_master(anchor=date(2024, 6, 1))

        result = RecurringMaterializer().materialize([master], today=date(2024, 5, 1))

        self.assertEqual(result.created, [])
        self.assertIs(result.transactions[0], master)

    def test_catch_up_is_capped_and_resumes_on_next_pass(self) -> None:
        master = make_master("coffee", date(2024, 1, 1), TransactionPeriod.DAILY)
        materializer = RecurringMaterializer(max_iterations=120)

        first = materializer.materialize([master], today=date(2024, 12, 31))

        self.assertEqual(len(first.created), 120)
        self.assertEqual(first.capped, ["coffee"])
        self.assertEqual(first.transactions[0].date, date(2024, 4, 30))

        second = materializer.materialize(first.transactions, today=date(2024, 12, 31))

        self.assertEqual(len(second.created), 120)
        self.assertEqual(second.created[0].date, date(2024, 4, 30))
        self.assertEqual(second.transactions[0].date, date(2024, 8, 28))

    def test_master_without_date_is_skipped(self) -> None:
        master = make_master().model_copy(update={"date": None})

        result = RecurringMaterializer().materialize([master], today=date(2024, 4, 14))

        self.assertEqual(result.created, [])
        self.assertEqual(result.transactions, [master])

    def test_reentrant_pass_is_ignored(self) -> None:
        materializer = RecurringMaterializer()
        records = [make_master()]
        source = ReentrantInput(materializer, records)

        outer = materializer.materialize(source, today=date(2024, 4, 14))

        self.assertTrue(source.nested.reentrant)
        self.assertEqual(source.nested.created, [])
        self.assertEqual(len(outer.created), 3)
        self.assertFalse(materializer.in_progress)

    def test_rejects_non_positive_iteration_cap(self) -> None:
        with self.assertRaises(ValueError):
            RecurringMaterializer(max_iterations=0)


if __name__ == "__main__":
    unittest.main()
