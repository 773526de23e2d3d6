import unittest
from decimal import Decimal
from unittest import mock

from backend import currency_conversion
from backend.currency_conversion import (
    DEFAULT_PROVIDER,
    CompositeRateProvider,
    FrankfurterRateProvider,
    RateProviderUnavailable,
    TableRateProvider,
    build_rate_provider,
    convert_amount,
    normalize_currency,
    resolve_rate,
    snapshot_rate_for,
)


class ExplodingProvider:
    def get_rate(self, source_currency, target_currency, date=None):
        raise AssertionError("provider should not be consulted")


class UnavailableProvider:
    def get_rate(self, source_currency, target_currency, date=None):
        raise RateProviderUnavailable("offline")


class CurrencyConversionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = TableRateProvider()

    def test_same_currency_returns_original_amount(self) -> None:
        amount = convert_amount(Decimal("12.50"), "USD", "USD", rate_provider=self.provider)

        self.assertEqual(amount, Decimal("12.50"))

    def test_same_currency_never_consults_provider(self) -> None:
        amount = convert_amount(Decimal("7"), "huf", "HUF", rate_provider=ExplodingProvider())

        self.assertEqual(amount, Decimal("7"))
        self.assertEqual(resolve_rate("EUR", "EUR", rate_provider=ExplodingProvider()), Decimal("1"))

    def test_conversion_uses_directional_table(self) -> None:
        self.assertEqual(
            convert_amount(Decimal("10"), "EUR", "USD", rate_provider=self.provider),
            Decimal("11.80"),
        )
        self.assertEqual(
            convert_amount(Decimal("10"), "USD", "EUR", rate_provider=self.provider),
            Decimal("8.50"),
        )

    def test_snapshot_rate_takes_precedence(self) -> None:
        amount = convert_amount(
            Decimal("10"),
            "EUR",
            "USD",
            snapshot_rate=Decimal("1.5"),
            rate_provider=ExplodingProvider(),
        )

        self.assertEqual(amount, Decimal("15.0"))

    def test_zero_snapshot_rate_is_ignored(self) -> None:
        amount = convert_amount(
            Decimal("10"), "EUR", "USD", snapshot_rate=Decimal("0"), rate_provider=self.provider
        )

        self.assertEqual(amount, Decimal("11.80"))

    def test_unknown_pair_falls_back_to_identity_with_warning(self) -> None:
        with mock.patch.object(currency_conversion, "logger") as logger:
            amount = convert_amount(Decimal("10"), "USD", "JPY", rate_provider=self.provider)

        self.assertEqual(amount, Decimal("10"))
        logger.warning.assert_called_once()
        self.assertEqual(logger.warning.call_args.args[0], "exchange_rate_missing")

    def test_custom_table_is_normalized(self) -> None:
        provider = TableRateProvider(table={"usd": {"jpy": "150"}})

        self.assertEqual(provider.get_rate("USD", "JPY"), Decimal("150"))
        self.assertIsNone(provider.get_rate("JPY", "USD"))

    def test_composite_provider_falls_back_when_primary_unavailable(self) -> None:
        composite = CompositeRateProvider(primary=UnavailableProvider(), fallback=self.provider)

        amount = convert_amount(Decimal("10"), "GBP", "EUR", rate_provider=composite)

        self.assertEqual(amount, Decimal("11.60"))

    def test_composite_provider_falls_back_when_primary_has_no_rate(self) -> None:
        composite = CompositeRateProvider(
            primary=TableRateProvider(table={"USD": {"JPY": Decimal("150")}}),
            fallback=self.provider,
        )

        self.assertEqual(composite.get_rate("USD", "HUF"), Decimal("350.0"))

    def test_snapshot_rate_for_record(self) -> None:
        self.assertEqual(snapshot_rate_for("EUR", "USD", self.provider), Decimal("1.18"))
        self.assertEqual(snapshot_rate_for("USD", "USD", ExplodingProvider()), Decimal("1"))

    def test_build_rate_provider_defaults_to_table(self) -> None:
        self.assertIsInstance(build_rate_provider(None), TableRateProvider)
        self.assertIsInstance(build_rate_provider("frankfurter"), CompositeRateProvider)
        with mock.patch.object(currency_conversion, "logger"):
            self.assertIsInstance(build_rate_provider("bogus"), TableRateProvider)

    def test_default_provider_is_usable_at_import(self) -> None:
        self.assertIsInstance(DEFAULT_PROVIDER, TableRateProvider)
        self.assertEqual(resolve_rate("GBP", "USD"), Decimal("1.37"))

    def test_live_provider_ignores_malformed_codes(self) -> None:
        live = FrankfurterRateProvider()
        composite = CompositeRateProvider(primary=live, fallback=self.provider)

        with mock.patch.object(live, "_fetch_rates") as fetch, mock.patch.object(
            currency_conversion, "logger"
        ):
            self.assertIsNone(live.get_rate("EURO", "USD"))
            rate = resolve_rate("EURO", "USD", rate_provider=composite)

        self.assertEqual(rate, Decimal("1"))
        fetch.assert_not_called()

    def test_normalize_currency(self) -> None:
        self.assertEqual(normalize_currency(" eur "), "EUR")
        with self.assertRaises(ValueError):
            normalize_currency("EURO")
        with self.assertRaises(ValueError):
            normalize_currency("U5D")


if __name__ == "__main__":
    unittest.main()
