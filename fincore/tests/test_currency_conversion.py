import io
import json
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import product
from unittest import mock
from urllib.error import URLError

from structlog.testing import capture_logs

from fincore.currency_conversion import (
    CurrencyConverter,
    ExchangeRateTable,
    FrankfurterRateSource,
    RateProviderUnavailable,
    StaticRateSource,
    default_currency_for_language,
    load_rate_table,
    save_rate_table,
)
from fincore.storage import InMemoryStore

TOLERANCE = Decimal("1e-18")


class FailingSource:
    def __init__(self) -> None:
        self.calls = 0

    def fetch_rates(self, base_currency: str):
        self.calls += 1
        raise RateProviderUnavailable("Down")


class CurrencyConversionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.table = ExchangeRateTable(
            "HUF",
            {
                "EUR": Decimal("400"),
                "USD": Decimal("320"),
                "JPY": Decimal("2"),
            },
        )
        self.converter = CurrencyConverter(self.table, source=FailingSource())

    def test_same_currency_returns_original_amount(self) -> None:
        amount = self.converter.convert(Decimal("12.345"), "EUR", "EUR")

        self.assertEqual(amount, Decimal("12.345"))

    def test_foreign_to_base_multiplies_by_rate(self) -> None:
        self.assertEqual(self.converter.convert(Decimal("10"), "EUR", "HUF"), Decimal("4000"))

    def test_base_to_foreign_divides_by_rate(self) -> None:
        self.assertEqual(self.converter.convert(Decimal("800"), "HUF", "EUR"), Decimal("2"))

    def test_cross_rate_routes_through_base(self) -> None:
        self.assertEqual(self.converter.convert(Decimal("10"), "EUR", "USD"), Decimal("12.5"))

    def test_normalizes_currency_codes(self) -> None:
        self.assertEqual(self.converter.convert(Decimal("6"), " eur ", "jpy"), Decimal("1200"))

    def test_conversions_triangulate(self) -> None:
        codes = ["HUF", "EUR", "USD", "JPY"]
        amount = Decimal("123.45")
        for source, middle, target in product(codes, repeat=3):
            via_middle = self.converter.convert(
                self.converter.convert(amount, source, middle), middle, target
            )
            direct = self.converter.convert(amount, source, target)
            self.assertLess(abs(via_middle - direct), TOLERANCE, (source, middle, target))

    def test_unknown_currency_falls_back_to_rate_one_and_is_flagged(self) -> None:
        with capture_logs() as logs:
            amount = self.converter.convert(Decimal("10"), "XYZ", "HUF")
            self.converter.convert(Decimal("5"), "XYZ", "HUF")

        self.assertEqual(amount, Decimal("10"))
        self.assertEqual(self.converter.get_rate("XYZ"), Decimal("1"))
        self.assertEqual(self.converter.unknown_currencies, {"XYZ"})
        warnings = [entry for entry in logs if entry["event"] == "unknown_currency_rate_fallback"]
        self.assertEqual(len(warnings), 1)
        self.assertEqual(warnings[0]["currency"], "XYZ")

    def test_set_rate_applies_to_later_conversions(self) -> None:
        self.converter.set_rate("eur", "500")

        self.assertEqual(self.converter.convert(Decimal("1"), "EUR", "HUF"), Decimal("500"))

    def test_set_rate_rejects_conflicting_base_rate(self) -> None:
        with self.assertRaises(ValueError):
            self.converter.set_rate("HUF", "2")
        self.converter.set_rate("HUF", "1")
        self.assertEqual(self.converter.get_rate("HUF"), Decimal("1"))

    def test_set_rate_rejects_invalid_values(self) -> None:
        for value in ("0", "-3", "abc"):
            with self.assertRaises(ValueError):
                self.converter.set_rate("EUR", value)
        with self.assertRaises(ValueError):
            self.converter.set_rate("EURO", "1")

    def test_table_forces_base_rate_to_one(self) -> None:
        table = ExchangeRateTable("EUR", {"EUR": Decimal("3"), "USD": Decimal("0.9")})

        self.assertEqual(table.get("EUR"), Decimal("1"))

    def test_default_table_rebases_onto_requested_currency(self) -> None:
        table = ExchangeRateTable.with_defaults("EUR")

        self.assertEqual(table.get("EUR"), Decimal("1"))
        self.assertEqual(table.get("HUF"), Decimal("1") / Decimal("386.7"))

    def test_rate_table_round_trips_through_store(self) -> None:
        store = InMemoryStore()
        self.table.set("GBP", "450")
        self.table.last_updated = datetime(2025, 1, 2, tzinfo=timezone.utc)
        save_rate_table(store, self.table)

        loaded = load_rate_table(store, base_currency="HUF")

        self.assertEqual(loaded.get("GBP"), Decimal("450"))
        self.assertEqual(loaded.get("EUR"), Decimal("400"))
        # defaults fill in currencies that were never saved
        self.assertEqual(loaded.get("CHF"), Decimal("368.5"))
        self.assertEqual(loaded.last_updated, datetime(2025, 1, 2, tzinfo=timezone.utc))

    def test_default_currency_for_language(self) -> None:
        self.assertEqual(default_currency_for_language("hu"), "HUF")
        self.assertEqual(default_currency_for_language("de-AT"), "EUR")
        self.assertEqual(default_currency_for_language("xx"), "USD")


class FrankfurterRateSourceTests(unittest.TestCase):
    def test_inverts_quoted_rates(self) -> None:
        payload = json.dumps({"base": "HUF", "rates": {"EUR": 0.0025, "USD": 0.003125}}).encode()
        with mock.patch(
            "fincore.currency_conversion.urlopen",
            return_value=io.BytesIO(payload),
        ):
            rates = FrankfurterRateSource(base_url="https://fx.test").fetch_rates("huf")

        self.assertEqual(rates["EUR"], Decimal("400"))
        self.assertEqual(rates["USD"], Decimal("320"))
        self.assertEqual(rates["HUF"], Decimal("1"))

    def test_network_error_raises_unavailable(self) -> None:
        with mock.patch(
            "fincore.currency_conversion.urlopen",
            side_effect=URLError("offline"),
        ):
            with self.assertRaises(RateProviderUnavailable):
                FrankfurterRateSource(base_url="https://fx.test").fetch_rates("HUF")

    def test_missing_rates_raises_unavailable(self) -> None:
        with mock.patch(
            "fincore.currency_conversion.urlopen",
            return_value=io.BytesIO(b'{"base": "HUF"}'),
        ):
            with self.assertRaises(RateProviderUnavailable):
                FrankfurterRateSource(base_url="https://fx.test").fetch_rates("HUF")


class RateRefreshTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.table = ExchangeRateTable("HUF", {"EUR": Decimal("400")})

    async def test_failed_refresh_leaves_table_untouched(self) -> None:
        source = FailingSource()
        converter = CurrencyConverter(self.table, source=source)

        result = await converter.refresh_rates()

        self.assertFalse(result.success)
        self.assertEqual(source.calls, 1)
        self.assertEqual(self.table.rates, {"HUF": Decimal("1"), "EUR": Decimal("400")})
        self.assertIsNone(self.table.last_updated)

    async def test_successful_refresh_replaces_table(self) -> None:
        source = StaticRateSource(rates={"HUF": Decimal("1"), "EUR": Decimal("390"), "USD": Decimal("330")})
        converter = CurrencyConverter(self.table, source=source)

        result = await converter.refresh_rates()

        self.assertTrue(result.success)
        self.assertEqual(result.method, "api")
        self.assertEqual(self.table.get("EUR"), Decimal("390"))
        self.assertEqual(self.table.get("USD"), Decimal("330"))
        self.assertIsNotNone(self.table.last_updated)

    async def test_fresh_table_is_not_refetched_unless_forced(self) -> None:
        self.table.last_updated = datetime.now(timezone.utc) - timedelta(hours=1)
        source = FailingSource()
        converter = CurrencyConverter(self.table, source=source, max_age=timedelta(hours=24))

        cached = await converter.refresh_rates()
        forced = await converter.refresh_rates(force=True)

        self.assertTrue(cached.success)
        self.assertEqual(cached.method, "cached")
        self.assertFalse(forced.success)
        self.assertEqual(source.calls, 1)


if __name__ == "__main__":
    unittest.main()
