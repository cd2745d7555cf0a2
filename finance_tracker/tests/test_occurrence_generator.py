import unittest
from datetime import date
from decimal import Decimal

from finance_tracker.occurrence_generator import (
    Occurrence,
    due_occurrences,
    generate_occurrences,
    next_occurrence,
    project_upcoming,
    upcoming_totals,
)
from finance_tracker.recurrence_rule import RecurrenceRule, TransactionTemplate, validate_rule


def make_rule(**overrides) -> RecurrenceRule:
    values = {
        "id": "rule-1",
        "owner_id": 1,
        "template": TransactionTemplate(
            description="Streaming",
            amount=Decimal("15"),
            currency="USD",
        ),
        "frequency": "daily",
        "start_date": date(2024, 1, 1),
    }
    values.update(overrides)
    return validate_rule(RecurrenceRule(**values))


class GenerateOccurrencesTests(unittest.TestCase):
    def test_start_date_is_exclusive(self) -> None:
        rule = make_rule()

        self.assertEqual(
            generate_occurrences(rule, date(2024, 1, 4)),
            [date(2024, 1, 2), date(2024, 1, 3), date(2024, 1, 4)],
        )

    def test_resumes_after_watermark(self) -> None:
        rule = make_rule(last_generated_date=date(2024, 1, 3))

        self.assertEqual(
            generate_occurrences(rule, date(2024, 1, 5)),
            [date(2024, 1, 4), date(2024, 1, 5)],
        )

    def test_nothing_due_when_watermark_reaches_as_of(self) -> None:
        rule = make_rule(last_generated_date=date(2024, 1, 5))

        self.assertEqual(generate_occurrences(rule, date(2024, 1, 5)), [])
        self.assertEqual(generate_occurrences(rule, date(2024, 1, 4)), [])

    def test_inactive_rule_generates_nothing(self) -> None:
        rule = make_rule(is_active=False)

        self.assertEqual(generate_occurrences(rule, date(2024, 3, 1)), [])

    def test_end_date_caps_generation(self) -> None:
        rule = make_rule(
            frequency="monthly",
            day_of_month=15,
            end_date=date(2024, 6, 30),
        )

        occurrences = generate_occurrences(rule, date(2026, 1, 1))

        self.assertEqual(occurrences[-1], date(2024, 6, 15))
        self.assertEqual(len(occurrences), 6)
        self.assertTrue(all(day <= date(2024, 6, 30) for day in occurrences))

    def test_exhausted_rule_generates_nothing(self) -> None:
        rule = make_rule(
            frequency="monthly",
            day_of_month=15,
            end_date=date(2024, 6, 30),
            last_generated_date=date(2024, 6, 15),
        )

        self.assertEqual(generate_occurrences(rule, date(2030, 1, 1)), [])

    def test_catch_up_returns_every_missed_period(self) -> None:
        rule = make_rule(frequency="weekly", day_of_week=3)

        occurrences = generate_occurrences(rule, date(2024, 2, 1))

        self.assertEqual(
            occurrences,
            [
                date(2024, 1, 3),
                date(2024, 1, 10),
                date(2024, 1, 17),
                date(2024, 1, 24),
                date(2024, 1, 31),
            ],
        )

    def test_custom_interval_phase_follows_watermark(self) -> None:
        rule = make_rule(
            frequency="custom",
            interval_days=10,
            last_generated_date=date(2024, 1, 21),
        )

        self.assertEqual(
            generate_occurrences(rule, date(2024, 2, 15)),
            [date(2024, 1, 31), date(2024, 2, 10)],
        )

    def test_suspension_and_reactivation_resume_without_gap(self) -> None:
        rule = make_rule(frequency="weekly", day_of_week=1, last_generated_date=date(2024, 1, 8))
        suspended = make_rule(
            frequency="weekly",
            day_of_week=1,
            last_generated_date=date(2024, 1, 8),
            is_active=False,
        )

        self.assertEqual(generate_occurrences(suspended, date(2024, 2, 5)), [])
        self.assertEqual(
            generate_occurrences(rule, date(2024, 2, 5)),
            [date(2024, 1, 15), date(2024, 1, 22), date(2024, 1, 29), date(2024, 2, 5)],
        )

    def test_due_occurrences_carry_rule_id(self) -> None:
        rule = make_rule()

        self.assertEqual(
            due_occurrences(rule, date(2024, 1, 2)),
            [Occurrence(rule_id="rule-1", date=date(2024, 1, 2))],
        )


class ProjectionTests(unittest.TestCase):
    def test_project_upcoming_skips_dates_up_to_as_of(self) -> None:
        rule = make_rule(frequency="weekly", day_of_week=5)

        upcoming = project_upcoming(rule, date(2024, 1, 10), date(2024, 1, 31))

        self.assertEqual(upcoming, [date(2024, 1, 12), date(2024, 1, 19), date(2024, 1, 26)])

    def test_project_upcoming_keeps_custom_interval_phase(self) -> None:
        rule = make_rule(frequency="custom", interval_days=14)

        upcoming = project_upcoming(rule, date(2024, 1, 20), date(2024, 2, 28))

        self.assertEqual(upcoming, [date(2024, 1, 29), date(2024, 2, 12), date(2024, 2, 26)])

    def test_project_upcoming_respects_end_date_and_activity(self) -> None:
        ending = make_rule(end_date=date(2024, 1, 12))
        inactive = make_rule(is_active=False)

        self.assertEqual(
            project_upcoming(ending, date(2024, 1, 10), date(2024, 2, 1)),
            [date(2024, 1, 11), date(2024, 1, 12)],
        )
        self.assertEqual(project_upcoming(inactive, date(2024, 1, 10), date(2024, 2, 1)), [])

    def test_next_occurrence_for_monthly_clamp(self) -> None:
        rule = make_rule(frequency="monthly", day_of_month=31)

        self.assertEqual(next_occurrence(rule, date(2024, 2, 10)), date(2024, 2, 29))

    def test_next_occurrence_for_long_custom_interval(self) -> None:
        rule = make_rule(frequency="custom", interval_days=45)

        self.assertEqual(next_occurrence(rule, date(2024, 1, 2)), date(2024, 2, 15))

    def test_next_occurrence_for_future_start(self) -> None:
        rule = make_rule(frequency="monthly", day_of_month=5, start_date=date(2024, 6, 5))

        self.assertEqual(next_occurrence(rule, date(2024, 1, 1)), date(2024, 7, 5))

    def test_next_occurrence_none_when_exhausted(self) -> None:
        rule = make_rule(end_date=date(2024, 1, 5))

        self.assertIsNone(next_occurrence(rule, date(2024, 1, 5)))

    def test_upcoming_totals_group_expenses_by_currency(self) -> None:
        rules = [
            make_rule(
                frequency="weekly",
                day_of_week=1,
                template=TransactionTemplate(description="Lunch", amount=Decimal("12.50")),
            ),
            make_rule(
                frequency="monthly",
                day_of_month=20,
                template=TransactionTemplate(
                    description="Rent", amount=Decimal("900"), currency="EUR"
                ),
            ),
            make_rule(
                frequency="monthly",
                day_of_month=25,
                template=TransactionTemplate(
                    description="Salary", amount=Decimal("3000"), is_income=True
                ),
            ),
        ]

        totals = upcoming_totals(rules, date(2024, 1, 1), date(2024, 1, 31))

        self.assertEqual(totals, {"USD": Decimal("50.00"), "EUR": Decimal("900")})


if __name__ == "__main__":
    unittest.main()
