import unittest
from decimal import Decimal

from backend.currency_conversion import TableRateProvider
from backend.portfolio_engine import Holding, gain_percent, summarize_portfolio, value_holding


class PortfolioEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = TableRateProvider()

    def test_value_holding_in_native_currency(self) -> None:
        holding = Holding(
            quantity=Decimal("10"),
            purchase_price=Decimal("100"),
            current_price=Decimal("120"),
            currency="USD",
            holding_id=3,
            symbol="ACME",
        )

        valuation = value_holding(holding, "USD", rate_provider=self.provider)

        self.assertEqual(valuation.value, Decimal("1200"))
        self.assertEqual(valuation.cost, Decimal("1000"))
        self.assertEqual(valuation.gain_loss, Decimal("200"))
        self.assertEqual(valuation.gain_loss_percent, Decimal("20"))
        self.assertEqual(valuation.holding_id, 3)

    def test_summary_converts_with_snapshot(self) -> None:
        holdings = [
            Holding(Decimal("2"), Decimal("50"), Decimal("40"), "EUR", exchange_rate=Decimal("1.2")),
            Holding(Decimal("1"), Decimal("100"), Decimal("150"), "USD"),
        ]

        summary = summarize_portfolio(holdings, "USD", rate_provider=self.provider)

        self.assertEqual(summary.total_value, Decimal("246.0"))
        self.assertEqual(summary.total_cost, Decimal("220.0"))
        self.assertEqual(summary.total_gain_loss, Decimal("26.0"))
        self.assertEqual(len(summary.holdings), 2)

    def test_zero_cost_yields_zero_percent(self) -> None:
        holding = Holding(Decimal("5"), Decimal("0"), Decimal("10"), "USD")

        valuation = value_holding(holding, "USD")

        self.assertEqual(valuation.gain_loss, Decimal("50"))
        self.assertEqual(valuation.gain_loss_percent, Decimal("0"))
        self.assertEqual(gain_percent(Decimal("10"), Decimal("-1")), Decimal("0"))

    def test_empty_portfolio(self) -> None:
        summary = summarize_portfolio([], "EUR")

        self.assertEqual(summary.total_value, Decimal("0"))
        self.assertEqual(summary.total_gain_loss_percent, Decimal("0"))


if __name__ == "__main__":
    unittest.main()
