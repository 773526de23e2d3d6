from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional

from backend.currency_conversion import RateProvider, convert_amount

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class Holding:
    quantity: Decimal
    purchase_price: Decimal
    current_price: Decimal
    currency: str
    exchange_rate: Optional[Decimal] = None
    holding_id: Optional[int] = None
    symbol: Optional[str] = None
    type: Optional[str] = None


@dataclass(frozen=True)
class HoldingValuation:
    holding_id: Optional[int]
    symbol: Optional[str]
    value: Decimal
    cost: Decimal
    gain_loss: Decimal
    gain_loss_percent: Decimal


@dataclass
class PortfolioSummary:
    currency: str
    total_value: Decimal = ZERO
    total_cost: Decimal = ZERO
    holdings: List[HoldingValuation] = field(default_factory=list)

    @property
    def total_gain_loss(self) -> Decimal:
        return self.total_value - self.total_cost

    @property
    def total_gain_loss_percent(self) -> Decimal:
        return gain_percent(self.total_gain_loss, self.total_cost)


def gain_percent(gain_loss: Decimal, cost: Decimal) -> Decimal:
    if cost <= ZERO:
        return ZERO
    return gain_loss / cost * HUNDRED


def value_holding(
    holding: Holding,
    target_currency: str,
    rate_provider: RateProvider | None = None,
) -> HoldingValuation:
    native_value = _coerce(holding.quantity) * _coerce(holding.current_price)
    native_cost = _coerce(holding.quantity) * _coerce(holding.purchase_price)
    value = convert_amount(
        native_value,
        holding.currency,
        target_currency,
        snapshot_rate=holding.exchange_rate,
        rate_provider=rate_provider,
    )
    cost = convert_amount(
        native_cost,
        holding.currency,
        target_currency,
        snapshot_rate=holding.exchange_rate,
        rate_provider=rate_provider,
    )
    gain_loss = value - cost
    return HoldingValuation(
        holding_id=holding.holding_id,
        symbol=holding.symbol,
        value=value,
        cost=cost,
        gain_loss=gain_loss,
        gain_loss_percent=gain_percent(gain_loss, cost),
    )


def summarize_portfolio(
    holdings: Iterable[Holding],
    target_currency: str,
    rate_provider: RateProvider | None = None,
) -> PortfolioSummary:
    summary = PortfolioSummary(currency=target_currency)
    for holding in holdings:
        valuation = value_holding(holding, target_currency, rate_provider=rate_provider)
        summary.holdings.append(valuation)
        summary.total_value += valuation.value
        summary.total_cost += valuation.cost
    return summary


def _coerce(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
