from __future__ import annotations

from dataclasses import dataclass
from calendar import monthrange
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, List

SUPPORTED_FREQUENCIES = {"daily", "weekly", "monthly", "yearly"}
DEFAULT_FREQUENCY = "monthly"

# "roll" carries surplus days into the next month (2024-01-31 + 1 month ->
# 2024-03-02); "clamp" stops at the last day of the target month (2024-02-29).
OVERFLOW_ROLL = "roll"
OVERFLOW_CLAMP = "clamp"
OVERFLOW_POLICIES = {OVERFLOW_ROLL, OVERFLOW_CLAMP}


@dataclass(frozen=True)
class RecurringTemplate:
    start_date: date
    next_occurrence: date
    frequency: str = DEFAULT_FREQUENCY
    end_date: date | None = None
    is_active: bool = True
    template_id: int | None = None
    kind: str = "transaction"
    label: str | None = None
    amount: Decimal | None = None
    currency: str | None = None


@dataclass(frozen=True)
class ProjectedOccurrence:
    date: date
    template_id: int | None
    kind: str
    label: str | None = None
    amount: Decimal | None = None
    currency: str | None = None


@dataclass(frozen=True)
class AdvanceResult:
    next_occurrence: date
    is_active: bool


def normalize_frequency(value: str | None) -> str:
    normalized = "".join(ch for ch in (value or "").strip().lower() if ch.isalnum())
    if normalized not in SUPPORTED_FREQUENCIES:
        return DEFAULT_FREQUENCY
    return normalized


def validate_frequency(value: str) -> str:
    normalized = "".join(ch for ch in value.strip().lower() if ch.isalnum())
    if normalized not in SUPPORTED_FREQUENCIES:
        raise ValueError("Only daily, weekly, monthly, or yearly schedules are supported.")
    return normalized


def validate_overflow(value: str | None) -> str:
    normalized = (value or OVERFLOW_ROLL).strip().lower()
    if normalized not in OVERFLOW_POLICIES:
        raise ValueError("Overflow policy must be 'roll' or 'clamp'.")
    return normalized


def next_occurrence(value: date, frequency: str | None, overflow: str = OVERFLOW_ROLL) -> date:
    """Add one calendar unit of ``frequency`` to ``value``.

    Unknown frequencies advance by one month.
    """
    overflow = validate_overflow(overflow)
    normalized = normalize_frequency(frequency)
    if normalized == "daily":
        return value + timedelta(days=1)
    if normalized == "weekly":
        return value + timedelta(days=7)
    if normalized == "yearly":
        return _add_months(value, 12, overflow)
    return _add_months(value, 1, overflow)


def project_occurrences(
    template: RecurringTemplate,
    range_start: date,
    range_end: date,
    overflow: str = OVERFLOW_ROLL,
) -> List[date]:
    if range_start > range_end:
        raise ValueError("range_start must be on or before range_end.")
    if not template.is_active:
        return []

    dates: List[date] = []
    current = template.next_occurrence or template.start_date
    while current <= range_end:
        if template.end_date is not None and current > template.end_date:
            break
        if current >= range_start:
            dates.append(current)
        current = next_occurrence(current, template.frequency, overflow)
    return dates


def project_templates(
    templates: Iterable[RecurringTemplate],
    range_start: date,
    range_end: date,
    overflow: str = OVERFLOW_ROLL,
) -> List[ProjectedOccurrence]:
    projections: List[ProjectedOccurrence] = []
    for template in templates:
        for occurrence in project_occurrences(template, range_start, range_end, overflow):
            projections.append(
                ProjectedOccurrence(
                    date=occurrence,
                    template_id=template.template_id,
                    kind=template.kind,
                    label=template.label,
                    amount=template.amount,
                    currency=template.currency,
                )
            )
    projections.sort(key=lambda entry: entry.date)
    return projections


def advance_template(template: RecurringTemplate, overflow: str = OVERFLOW_ROLL) -> AdvanceResult:
    if not template.is_active:
        raise ValueError("Recurring template is inactive.")
    following = next_occurrence(template.next_occurrence, template.frequency, overflow)
    still_active = template.end_date is None or following <= template.end_date
    return AdvanceResult(next_occurrence=following, is_active=still_active)


def _add_months(value: date, months: int, overflow: str) -> date:
    total_month = value.month - 1 + months
    year = value.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    if value.day <= last_day:
        return date(year, month, value.day)
    if overflow == OVERFLOW_CLAMP:
        return date(year, month, last_day)
    return date(year, month, 1) + timedelta(days=value.day - 1)
