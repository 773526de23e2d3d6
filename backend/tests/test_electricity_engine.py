import unittest
from datetime import date
from decimal import Decimal

from backend.currency_conversion import TableRateProvider
from backend.electricity_engine import (
    AddressPeriod,
    MeterBill,
    compute_usage,
    consumption_history,
    forecast_accuracy,
    forecast_next_bill,
    history_cutoff,
    summarize_bills,
)


def make_bill(reading_date, bill_date, day, prev_day, night, prev_night, amount, currency="USD", rate=None):
    return MeterBill(
        bill_date=bill_date,
        reading_date=reading_date,
        day_reading=Decimal(day),
        night_reading=Decimal(night),
        amount_paid=Decimal(amount),
        currency=currency,
        previous_day_reading=Decimal(prev_day) if prev_day is not None else None,
        previous_night_reading=Decimal(prev_night) if prev_night is not None else None,
        exchange_rate=rate,
    )


class ElectricityEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = TableRateProvider()
        self.bills = [
            make_bill(date(2024, 1, 31), date(2024, 2, 5), "1100", "1000", "550", "500", "60"),
            make_bill(date(2024, 2, 29), date(2024, 3, 5), "1200", "1100", "600", "550", "90"),
            make_bill(date(2024, 3, 31), date(2024, 4, 3), "1280", "1200", "640", "600", "75"),
        ]

    def test_compute_usage_requires_both_previous_readings_for_total(self) -> None:
        usage = compute_usage(Decimal("120"), Decimal("80"), Decimal("100"), None)

        self.assertEqual(usage.day_usage, Decimal("20"))
        self.assertIsNone(usage.night_usage)
        self.assertIsNone(usage.total_usage)

        usage = compute_usage(Decimal("120"), Decimal("80"), Decimal("100"), Decimal("70"))
        self.assertEqual(usage.total_usage, Decimal("30"))

    def test_summarize_bills(self) -> None:
        summary = summarize_bills(self.bills, "USD", rate_provider=self.provider)

        self.assertEqual(summary.total_cost, Decimal("225"))
        self.assertEqual(summary.total_usage, Decimal("420"))
        self.assertEqual(summary.monthly_average, Decimal("75"))
        self.assertEqual(summary.bill_count, 3)

    def test_summary_converts_foreign_bills(self) -> None:
        bills = [
            make_bill(date(2024, 1, 31), date(2024, 2, 5), "10", None, "10", None, "100", "EUR"),
            make_bill(
                date(2024, 2, 29), date(2024, 2, 28), "10", None, "10", None, "100", "EUR", Decimal("1.1")
            ),
        ]

        summary = summarize_bills(bills, "USD", rate_provider=self.provider)

        self.assertEqual(summary.total_cost, Decimal("228.0"))
        self.assertEqual(summary.total_usage, Decimal("0"))
        self.assertEqual(summary.monthly_average, Decimal("228.0"))

    def test_empty_summary(self) -> None:
        summary = summarize_bills([], "USD")

        self.assertEqual(summary.monthly_average, Decimal("0"))
        self.assertEqual(summary.bill_count, 0)

    def test_forecast_uses_three_most_recent_bills(self) -> None:
        older = make_bill(date(2023, 12, 31), date(2024, 1, 5), "1000", "900", "500", "450", "500")

        forecast = forecast_next_bill(self.bills + [older], "USD", rate_provider=self.provider)

        self.assertEqual(forecast.forecasted_amount, Decimal("75"))
        self.assertEqual(forecast.forecasted_usage, Decimal("140"))
        self.assertEqual(forecast.confidence_level, "high")
        self.assertEqual(forecast.based_on_bills, 3)

    def test_forecast_confidence_scales_with_bill_count(self) -> None:
        self.assertEqual(forecast_next_bill(self.bills[:1], "USD").confidence_level, "low")
        self.assertEqual(forecast_next_bill(self.bills[:2], "USD").confidence_level, "medium")
        self.assertIsNone(forecast_next_bill([], "USD"))

    def test_forecast_accuracy_is_floored(self) -> None:
        self.assertEqual(forecast_accuracy(Decimal("75"), Decimal("75")), Decimal("100"))
        self.assertEqual(forecast_accuracy(Decimal("10"), Decimal("50")), Decimal("0"))
        self.assertEqual(forecast_accuracy(Decimal("0"), Decimal("5")), Decimal("0"))

    def test_history_cutoff(self) -> None:
        self.assertEqual(history_cutoff(date(2024, 3, 31), 1), date(2024, 2, 29))
        self.assertEqual(history_cutoff(date(2024, 4, 15), 12), date(2023, 4, 15))
        with self.assertRaises(ValueError):
            history_cutoff(date(2024, 4, 15), 0)

    def test_consumption_history_backtests_each_bill(self) -> None:
        addresses = [
            AddressPeriod(date(2024, 1, 1), date(2024, 2, 15), nickname="Flat"),
            AddressPeriod(date(2024, 2, 16), address_line_1="1 Hill Road"),
        ]

        entries = consumption_history(
            self.bills, addresses, 12, date(2024, 4, 15), "USD", rate_provider=self.provider
        )

        self.assertEqual(len(entries), 3)
        self.assertIsNone(entries[0].forecasted_amount)
        self.assertIsNone(entries[0].forecast_accuracy)
        self.assertEqual(entries[0].property_nickname, "Flat")
        self.assertEqual(entries[1].property_nickname, "1 Hill Road")
        self.assertEqual(entries[1].forecasted_amount, Decimal("60"))
        self.assertEqual(entries[1].forecast_accuracy.quantize(Decimal("0.01")), Decimal("66.67"))
        self.assertEqual(entries[2].forecasted_amount, Decimal("75"))
        self.assertEqual(entries[2].forecast_accuracy, Decimal("100"))
        self.assertEqual(entries[2].total_usage, Decimal("120"))

    def test_consumption_history_respects_window(self) -> None:
        entries = consumption_history(self.bills, [], 1, date(2024, 4, 15), "USD")

        self.assertEqual([entry.reading_date for entry in entries], [date(2024, 3, 31)])
        self.assertEqual(entries[0].forecasted_amount, Decimal("75"))
        self.assertIsNone(entries[0].property_nickname)


if __name__ == "__main__":
    unittest.main()
