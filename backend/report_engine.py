from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from backend.currency_conversion import RateProvider, convert_amount

ZERO = Decimal("0")
MONTH_LABEL_FORMAT = "%b %Y"


@dataclass(frozen=True)
class FinancialRecord:
    amount: Decimal
    type: str
    currency: str
    date: date
    category: Optional[str] = None
    exchange_rate: Optional[Decimal] = None


@dataclass
class MonthlyBucket:
    label: str
    income: Decimal = ZERO
    expenses: Decimal = ZERO


@dataclass
class CategoryBucket:
    name: str
    total: Decimal = ZERO


@dataclass
class ReportSummary:
    currency: str
    total_income: Decimal = ZERO
    total_expenses: Decimal = ZERO
    record_count: int = 0
    monthly: List[MonthlyBucket] = field(default_factory=list)
    categories: List[CategoryBucket] = field(default_factory=list)

    @property
    def net(self) -> Decimal:
        return self.total_income - self.total_expenses


def month_label(value: date) -> str:
    return value.strftime(MONTH_LABEL_FORMAT)


def summarize_records(
    records: Iterable[FinancialRecord],
    target_currency: str,
    rate_provider: RateProvider | None = None,
) -> ReportSummary:
    """Fold records into totals plus month and category buckets.

    Each record is converted to ``target_currency`` first. Buckets keep the
    order in which their key was first seen.
    """
    summary = ReportSummary(currency=target_currency)
    months: dict[str, MonthlyBucket] = {}
    categories: dict[str, CategoryBucket] = {}

    for record in records:
        converted = convert_amount(
            record.amount,
            record.currency,
            target_currency,
            snapshot_rate=record.exchange_rate,
            rate_provider=rate_provider,
        )
        record_type = record.type.strip().lower()
        summary.record_count += 1

        label = month_label(record.date)
        bucket = months.get(label)
        if bucket is None:
            bucket = MonthlyBucket(label=label)
            months[label] = bucket
            summary.monthly.append(bucket)

        if record_type == "income":
            summary.total_income += converted
            bucket.income += converted
        elif record_type == "expense":
            summary.total_expenses += converted
            bucket.expenses += converted

        category_name = record.category or "Uncategorized"
        category_bucket = categories.get(category_name)
        if category_bucket is None:
            category_bucket = CategoryBucket(name=category_name)
            categories[category_name] = category_bucket
            summary.categories.append(category_bucket)
        category_bucket.total += converted

    return summary
