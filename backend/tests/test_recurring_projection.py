import unittest
from datetime import date
from decimal import Decimal

from backend.recurring_projection import (
    OVERFLOW_CLAMP,
    AdvanceResult,
    ProjectedOccurrence,
    RecurringTemplate,
    advance_template,
    next_occurrence,
    project_occurrences,
    project_templates,
    validate_frequency,
    validate_overflow,
)


class NextOccurrenceTests(unittest.TestCase):
    def test_daily_and_weekly_steps(self) -> None:
        self.assertEqual(next_occurrence(date(2024, 12, 31), "daily"), date(2025, 1, 1))
        self.assertEqual(next_occurrence(date(2024, 2, 26), "weekly"), date(2024, 3, 4))

    def test_monthly_rolls_surplus_days_forward(self) -> None:
        self.assertEqual(next_occurrence(date(2024, 1, 31), "monthly"), date(2024, 3, 2))
        self.assertEqual(next_occurrence(date(2023, 1, 31), "monthly"), date(2023, 3, 3))
        self.assertEqual(next_occurrence(date(2024, 3, 31), "monthly"), date(2024, 5, 1))

    def test_monthly_clamp_stops_at_month_end(self) -> None:
        self.assertEqual(
            next_occurrence(date(2024, 1, 31), "monthly", OVERFLOW_CLAMP), date(2024, 2, 29)
        )

    def test_monthly_crosses_year_boundary(self) -> None:
        self.assertEqual(next_occurrence(date(2024, 12, 15), "monthly"), date(2025, 1, 15))

    def test_yearly_from_leap_day(self) -> None:
        self.assertEqual(next_occurrence(date(2024, 2, 29), "yearly"), date(2025, 3, 1))
        self.assertEqual(
            next_occurrence(date(2024, 2, 29), "yearly", OVERFLOW_CLAMP), date(2025, 2, 28)
        )

    def test_unknown_frequency_advances_one_month(self) -> None:
        self.assertEqual(next_occurrence(date(2024, 5, 10), "fortnightly"), date(2024, 6, 10))
        self.assertEqual(next_occurrence(date(2024, 5, 10), None), date(2024, 6, 10))

    def test_validation_helpers(self) -> None:
        self.assertEqual(validate_frequency(" Weekly "), "weekly")
        with self.assertRaises(ValueError):
            validate_frequency("biweekly")
        self.assertEqual(validate_overflow(None), "roll")
        with self.assertRaises(ValueError):
            validate_overflow("truncate")

    def test_bad_overflow_policy_is_rejected_on_any_date(self) -> None:
        with self.assertRaises(ValueError):
            next_occurrence(date(2024, 5, 10), "monthly", "truncate")
        with self.assertRaises(ValueError):
            next_occurrence(date(2024, 5, 10), "daily", "truncate")


class ProjectionTests(unittest.TestCase):
    def test_projects_dates_within_range(self) -> None:
        template = RecurringTemplate(
            start_date=date(2024, 1, 1),
            next_occurrence=date(2024, 1, 1),
            frequency="weekly",
        )

        dates = project_occurrences(template, date(2024, 1, 5), date(2024, 1, 25))

        self.assertEqual(dates, [date(2024, 1, 8), date(2024, 1, 15), date(2024, 1, 22)])

    def test_projection_stops_at_end_date(self) -> None:
        template = RecurringTemplate(
            start_date=date(2024, 1, 10),
            next_occurrence=date(2024, 1, 10),
            frequency="monthly",
            end_date=date(2024, 3, 1),
        )

        dates = project_occurrences(template, date(2024, 1, 1), date(2024, 12, 31))

        self.assertEqual(dates, [date(2024, 1, 10), date(2024, 2, 10)])

    def test_inactive_template_projects_nothing(self) -> None:
        template = RecurringTemplate(
            start_date=date(2024, 1, 1),
            next_occurrence=date(2024, 1, 1),
            frequency="daily",
            is_active=False,
        )

        self.assertEqual(project_occurrences(template, date(2024, 1, 1), date(2024, 1, 5)), [])

    def test_inverted_range_is_rejected(self) -> None:
        template = RecurringTemplate(start_date=date(2024, 1, 1), next_occurrence=date(2024, 1, 1))

        with self.assertRaises(ValueError):
            project_occurrences(template, date(2024, 2, 1), date(2024, 1, 1))

    def test_templates_merge_sorted_by_date(self) -> None:
        rent = RecurringTemplate(
            start_date=date(2024, 1, 3),
            next_occurrence=date(2024, 1, 3),
            frequency="monthly",
            template_id=1,
            kind="transaction",
            label="Rent",
            amount=Decimal("900"),
            currency="EUR",
        )
        fund = RecurringTemplate(
            start_date=date(2024, 1, 1),
            next_occurrence=date(2024, 1, 1),
            frequency="monthly",
            template_id=7,
            kind="investment",
            label="Index fund",
            amount=Decimal("200"),
            currency="USD",
        )

        projections = project_templates([rent, fund], date(2024, 1, 1), date(2024, 1, 31))

        self.assertEqual(
            projections,
            [
                ProjectedOccurrence(
                    date=date(2024, 1, 1),
                    template_id=7,
                    kind="investment",
                    label="Index fund",
                    amount=Decimal("200"),
                    currency="USD",
                ),
                ProjectedOccurrence(
                    date=date(2024, 1, 3),
                    template_id=1,
                    kind="transaction",
                    label="Rent",
                    amount=Decimal("900"),
                    currency="EUR",
                ),
            ],
        )


class AdvanceTests(unittest.TestCase):
    def test_advance_moves_next_occurrence(self) -> None:
        template = RecurringTemplate(
            start_date=date(2024, 1, 31),
            next_occurrence=date(2024, 1, 31),
            frequency="monthly",
        )

        self.assertEqual(
            advance_template(template), AdvanceResult(next_occurrence=date(2024, 3, 2), is_active=True)
        )

    def test_advance_past_end_date_deactivates(self) -> None:
        template = RecurringTemplate(
            start_date=date(2024, 1, 1),
            next_occurrence=date(2024, 1, 1),
            frequency="weekly",
            end_date=date(2024, 1, 5),
        )

        result = advance_template(template)

        self.assertEqual(result.next_occurrence, date(2024, 1, 8))
        self.assertFalse(result.is_active)

    def test_advance_inactive_template_is_rejected(self) -> None:
        template = RecurringTemplate(
            start_date=date(2024, 1, 1),
            next_occurrence=date(2024, 1, 1),
            is_active=False,
        )

        with self.assertRaises(ValueError):
            advance_template(template)


if __name__ == "__main__":
    unittest.main()
