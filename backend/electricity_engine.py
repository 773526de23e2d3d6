from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from backend.currency_conversion import RateProvider, convert_amount

ZERO = Decimal("0")
HUNDRED = Decimal("100")
FORECAST_WINDOW = 3
CONFIDENCE_BY_COUNT = {1: "low", 2: "medium", 3: "high"}


@dataclass(frozen=True)
class UsageReading:
    day_usage: Optional[Decimal]
    night_usage: Optional[Decimal]
    total_usage: Optional[Decimal]


@dataclass(frozen=True)
class MeterBill:
    bill_date: date
    reading_date: date
    day_reading: Decimal
    night_reading: Decimal
    amount_paid: Decimal
    currency: str
    previous_day_reading: Optional[Decimal] = None
    previous_night_reading: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None

    @property
    def usage(self) -> UsageReading:
        return compute_usage(
            self.day_reading,
            self.night_reading,
            self.previous_day_reading,
            self.previous_night_reading,
        )


@dataclass(frozen=True)
class AddressPeriod:
    move_in_date: date
    move_out_date: Optional[date] = None
    nickname: Optional[str] = None
    address_line_1: Optional[str] = None

    def covers(self, value: date) -> bool:
        if value < self.move_in_date:
            return False
        return self.move_out_date is None or value <= self.move_out_date

    @property
    def display_name(self) -> Optional[str]:
        return self.nickname or self.address_line_1


@dataclass(frozen=True)
class BillSummary:
    total_cost: Decimal
    total_usage: Decimal
    monthly_average: Decimal
    bill_count: int


@dataclass(frozen=True)
class BillForecast:
    forecasted_amount: Decimal
    forecasted_usage: Decimal
    confidence_level: str
    based_on_bills: int


@dataclass(frozen=True)
class ConsumptionHistoryEntry:
    bill_date: date
    reading_date: date
    total_usage: Decimal
    day_usage: Decimal
    night_usage: Decimal
    amount_paid: Decimal
    currency: str
    property_nickname: Optional[str]
    forecasted_amount: Optional[Decimal]
    forecast_accuracy: Optional[Decimal]


def compute_usage(
    day_reading: Decimal,
    night_reading: Decimal,
    previous_day_reading: Optional[Decimal] = None,
    previous_night_reading: Optional[Decimal] = None,
) -> UsageReading:
    day_usage = None
    night_usage = None
    if previous_day_reading is not None:
        day_usage = _coerce(day_reading) - _coerce(previous_day_reading)
    if previous_night_reading is not None:
        night_usage = _coerce(night_reading) - _coerce(previous_night_reading)
    total_usage = None
    if day_usage is not None and night_usage is not None:
        total_usage = day_usage + night_usage
    return UsageReading(day_usage=day_usage, night_usage=night_usage, total_usage=total_usage)


def bill_cost(
    bill: MeterBill, target_currency: str, rate_provider: RateProvider | None = None
) -> Decimal:
    return convert_amount(
        bill.amount_paid,
        bill.currency,
        target_currency,
        snapshot_rate=bill.exchange_rate,
        rate_provider=rate_provider,
    )


def summarize_bills(
    bills: Iterable[MeterBill],
    target_currency: str,
    rate_provider: RateProvider | None = None,
) -> BillSummary:
    total_cost = ZERO
    total_usage = ZERO
    months: set[tuple[int, int]] = set()
    count = 0
    for bill in bills:
        count += 1
        total_cost += bill_cost(bill, target_currency, rate_provider)
        total_usage += bill.usage.total_usage or ZERO
        months.add((bill.bill_date.year, bill.bill_date.month))
    monthly_average = total_cost / len(months) if months else ZERO
    return BillSummary(
        total_cost=total_cost,
        total_usage=total_usage,
        monthly_average=monthly_average,
        bill_count=count,
    )


def forecast_next_bill(
    bills: Iterable[MeterBill],
    target_currency: str,
    rate_provider: RateProvider | None = None,
) -> Optional[BillForecast]:
    """Average the most recent bills by reading date.

    Returns None when there is no bill to base a forecast on.
    """
    recent = sorted(bills, key=lambda bill: bill.reading_date, reverse=True)[:FORECAST_WINDOW]
    if not recent:
        return None
    amounts = [bill_cost(bill, target_currency, rate_provider) for bill in recent]
    usages = [bill.usage.total_usage for bill in recent if bill.usage.total_usage is not None]
    forecasted_usage = sum(usages, ZERO) / len(usages) if usages else ZERO
    return BillForecast(
        forecasted_amount=sum(amounts, ZERO) / len(amounts),
        forecasted_usage=forecasted_usage,
        confidence_level=CONFIDENCE_BY_COUNT[len(recent)],
        based_on_bills=len(recent),
    )


def forecast_accuracy(actual: Decimal, forecasted: Decimal) -> Decimal:
    if actual <= ZERO:
        return ZERO
    accuracy = HUNDRED - abs(actual - forecasted) / actual * HUNDRED
    return max(accuracy, ZERO)


def history_cutoff(today: date, months: int) -> date:
    if months < 1:
        raise ValueError("months must be at least 1.")
    month_index = today.year * 12 + today.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    return date(year, month, min(today.day, monthrange(year, month)[1]))


def consumption_history(
    bills: Sequence[MeterBill],
    addresses: Iterable[AddressPeriod],
    months: int,
    today: date,
    target_currency: str,
    rate_provider: RateProvider | None = None,
) -> List[ConsumptionHistoryEntry]:
    cutoff = history_cutoff(today, months)
    address_list = list(addresses)
    ordered = sorted(bills, key=lambda bill: bill.reading_date)
    entries: List[ConsumptionHistoryEntry] = []
    for index, bill in enumerate(ordered):
        if bill.reading_date < cutoff:
            continue
        earlier = [prior for prior in ordered[:index] if prior.reading_date < bill.reading_date]
        forecast = forecast_next_bill(earlier, target_currency, rate_provider)
        actual = bill_cost(bill, target_currency, rate_provider)
        usage = bill.usage
        entries.append(
            ConsumptionHistoryEntry(
                bill_date=bill.bill_date,
                reading_date=bill.reading_date,
                total_usage=usage.total_usage or ZERO,
                day_usage=usage.day_usage or ZERO,
                night_usage=usage.night_usage or ZERO,
                amount_paid=actual,
                currency=target_currency,
                property_nickname=_address_at(address_list, bill.reading_date),
                forecasted_amount=forecast.forecasted_amount if forecast else None,
                forecast_accuracy=forecast_accuracy(actual, forecast.forecasted_amount)
                if forecast
                else None,
            )
        )
    return entries


def _address_at(addresses: Sequence[AddressPeriod], value: date) -> Optional[str]:
    for address in sorted(addresses, key=lambda item: item.move_in_date, reverse=True):
        if address.covers(value):
            return address.display_name
    return None


def _coerce(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
