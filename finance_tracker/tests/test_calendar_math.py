import unittest
from datetime import date, datetime, timedelta

from finance_tracker.calendar_math import (
    clamp_to_month,
    custom_interval_occurrences,
    daily_occurrences,
    monthly_occurrences,
    to_python_weekday,
    weekly_occurrences,
)


class WeeklyOccurrencesTests(unittest.TestCase):
    def test_wednesdays_after_monday_lower_bound(self) -> None:
        occurrences = weekly_occurrences(3, date(2024, 1, 1), date(2024, 1, 22))

        self.assertEqual(
            occurrences,
            [date(2024, 1, 3), date(2024, 1, 10), date(2024, 1, 17)],
        )

    def test_lower_bound_on_anchor_day_is_excluded(self) -> None:
        occurrences = weekly_occurrences(1, date(2024, 1, 1), date(2024, 1, 15))

        self.assertEqual(occurrences, [date(2024, 1, 8), date(2024, 1, 15)])

    def test_sunday_anchor(self) -> None:
        occurrences = weekly_occurrences(0, date(2024, 1, 1), date(2024, 1, 14))

        self.assertEqual(occurrences, [date(2024, 1, 7), date(2024, 1, 14)])

    def test_saturday_anchor(self) -> None:
        occurrences = weekly_occurrences(6, date(2024, 1, 1), date(2024, 1, 13))

        self.assertEqual(occurrences, [date(2024, 1, 6), date(2024, 1, 13)])

    def test_time_component_is_ignored(self) -> None:
        occurrences = weekly_occurrences(
            3,
            datetime(2024, 1, 1, 23, 59),
            datetime(2024, 1, 10, 0, 1),
        )

        self.assertEqual(occurrences, [date(2024, 1, 3), date(2024, 1, 10)])

    def test_long_range_steps_exactly_one_week(self) -> None:
        occurrences = weekly_occurrences(5, date(2020, 1, 1), date(2029, 12, 31))

        self.assertTrue(all(day.weekday() == 4 for day in occurrences))
        self.assertTrue(
            all(
                later - earlier == timedelta(days=7)
                for earlier, later in zip(occurrences, occurrences[1:])
            )
        )
        self.assertEqual(occurrences[0], date(2020, 1, 3))

    def test_empty_when_bounds_are_reversed_or_equal(self) -> None:
        self.assertEqual(weekly_occurrences(3, date(2024, 2, 1), date(2024, 1, 1)), [])
        self.assertEqual(weekly_occurrences(3, date(2024, 1, 3), date(2024, 1, 3)), [])

    def test_no_match_inside_short_window(self) -> None:
        self.assertEqual(weekly_occurrences(5, date(2024, 1, 1), date(2024, 1, 3)), [])

    def test_python_weekday_conversion(self) -> None:
        self.assertEqual(to_python_weekday(0), 6)
        self.assertEqual(to_python_weekday(1), 0)
        self.assertEqual(to_python_weekday(6), 5)


class MonthlyOccurrencesTests(unittest.TestCase):
    def test_clamps_day_31_in_leap_year(self) -> None:
        occurrences = monthly_occurrences(31, date(2024, 1, 31), date(2024, 4, 30))

        self.assertEqual(
            occurrences,
            [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)],
        )

    def test_clamps_day_31_in_common_year(self) -> None:
        occurrences = monthly_occurrences(31, date(2023, 1, 31), date(2023, 4, 30))

        self.assertEqual(
            occurrences,
            [date(2023, 2, 28), date(2023, 3, 31), date(2023, 4, 30)],
        )

    def test_clamped_month_does_not_shift_later_months(self) -> None:
        occurrences = monthly_occurrences(30, date(2024, 1, 30), date(2024, 3, 31))

        self.assertEqual(occurrences, [date(2024, 2, 29), date(2024, 3, 30)])

    def test_crosses_year_boundary(self) -> None:
        occurrences = monthly_occurrences(15, date(2023, 11, 20), date(2024, 2, 10))

        self.assertEqual(occurrences, [date(2023, 12, 15), date(2024, 1, 15)])

    def test_candidate_in_first_month_after_lower_bound_is_kept(self) -> None:
        occurrences = monthly_occurrences(20, date(2024, 5, 1), date(2024, 6, 1))

        self.assertEqual(occurrences, [date(2024, 5, 20)])

    def test_upper_bound_is_inclusive(self) -> None:
        occurrences = monthly_occurrences(1, date(2024, 1, 1), date(2024, 3, 1))

        self.assertEqual(occurrences, [date(2024, 2, 1), date(2024, 3, 1)])

    def test_empty_when_bounds_are_reversed(self) -> None:
        self.assertEqual(monthly_occurrences(1, date(2024, 3, 1), date(2024, 1, 1)), [])

    def test_clamp_to_month(self) -> None:
        self.assertEqual(clamp_to_month(2023, 2, 29), date(2023, 2, 28))
        self.assertEqual(clamp_to_month(2024, 2, 31), date(2024, 2, 29))
        self.assertEqual(clamp_to_month(2024, 4, 31), date(2024, 4, 30))
        self.assertEqual(clamp_to_month(2024, 4, 12), date(2024, 4, 12))


class IntervalOccurrencesTests(unittest.TestCase):
    def test_custom_interval_honors_inclusive_upper_bound(self) -> None:
        occurrences = custom_interval_occurrences(5, date(2024, 3, 1), date(2024, 3, 16))

        self.assertEqual(
            occurrences,
            [date(2024, 3, 6), date(2024, 3, 11), date(2024, 3, 16)],
        )

    def test_custom_interval_longer_than_window(self) -> None:
        self.assertEqual(
            custom_interval_occurrences(30, date(2024, 3, 1), date(2024, 3, 16)),
            [],
        )

    def test_daily_includes_leap_day(self) -> None:
        occurrences = daily_occurrences(date(2024, 2, 27), date(2024, 3, 1))

        self.assertEqual(
            occurrences,
            [date(2024, 2, 28), date(2024, 2, 29), date(2024, 3, 1)],
        )

    def test_daily_empty_for_same_day(self) -> None:
        self.assertEqual(daily_occurrences(date(2024, 2, 27), date(2024, 2, 27)), [])


if __name__ == "__main__":
    unittest.main()
