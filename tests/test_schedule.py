import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from compliance_tracking.services import schedule as sch


class ComputeNextDueTests(unittest.TestCase):
    def test_time_based_adds_interval_to_last_completion(self) -> None:
        completed = datetime(2026, 1, 10, 8, 0, tzinfo=timezone.utc)
        result = sch.compute_next_due(sch.Schedule("time_based", interval_days=30), completed)
        self.assertEqual(result["due_at"], datetime(2026, 2, 9, 8, 0, tzinfo=timezone.utc))
        self.assertIsNone(result["usage_due"])

    def test_time_based_keeps_wall_clock_across_dst(self) -> None:
        warsaw = ZoneInfo("Europe/Warsaw")
        completed = datetime(2026, 3, 20, 9, 0, tzinfo=warsaw)
        due = sch.compute_next_due(sch.Schedule("time_based", interval_days=14), completed)["due_at"]

        self.assertEqual(due, completed + timedelta(days=14))
        self.assertEqual((due.date().isoformat(), due.hour, due.minute), ("2026-04-03", 9, 0))
        # Clocks moved forward on 2026-03-29, so one hour less of elapsed time.
        elapsed = due.astimezone(timezone.utc) - completed.astimezone(timezone.utc)
        self.assertEqual(elapsed, timedelta(days=14, hours=-1))

    def test_time_based_accepts_iso_strings(self) -> None:
        result = sch.compute_next_due(
            sch.Schedule("time_based", interval_days=7),
            "2026-05-01T06:30:00+00:00",
        )
        self.assertEqual(result["due_at"], datetime(2026, 5, 8, 6, 30, tzinfo=timezone.utc))

    def test_never_completed_task_counts_from_creation(self) -> None:
        created = datetime(2026, 4, 1, 12, 0, tzinfo=timezone.utc)
        result = sch.compute_next_due(
            sch.Schedule("time_based", interval_days=30),
            None,
            created_at=created,
        )
        self.assertEqual(result["due_at"], datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc))

    def test_time_based_without_any_anchor_is_rejected(self) -> None:
        with self.assertRaises(sch.InvalidScheduleError):
            sch.compute_next_due(sch.Schedule("time_based", interval_days=30), None)

    def test_non_positive_intervals_are_rejected(self) -> None:
        for schedule in (
            sch.Schedule("time_based", interval_days=0),
            sch.Schedule("time_based", interval_days=-5),
            sch.Schedule("usage_based", interval_cycles=0),
            sch.Schedule("mixed", interval_days=30, interval_cycles=-1),
        ):
            with self.subTest(schedule=schedule):
                with self.assertRaises(sch.InvalidScheduleError):
                    sch.compute_next_due(schedule, datetime(2026, 1, 1, tzinfo=timezone.utc), 10)

    def test_invalid_schedule_error_is_a_value_error(self) -> None:
        self.assertTrue(issubclass(sch.InvalidScheduleError, ValueError))

    def test_unknown_schedule_type_is_rejected(self) -> None:
        with self.assertRaises(sch.InvalidScheduleError):
            sch.validate_schedule(sch.Schedule("calendar", interval_days=30))

    def test_missing_interval_for_schedule_type_is_rejected(self) -> None:
        with self.assertRaises(sch.InvalidScheduleError):
            sch.validate_schedule(sch.Schedule("usage_based", interval_days=30))
        with self.assertRaises(sch.InvalidScheduleError):
            sch.validate_schedule(sch.Schedule("mixed", interval_days=30))

    def test_usage_based_emits_boolean_without_date(self) -> None:
        schedule = sch.Schedule("usage_based", interval_cycles=5000)
        below = sch.compute_next_due(schedule, None, usage_since_completion=4999)
        at_limit = sch.compute_next_due(schedule, None, usage_since_completion=5000)
        unknown = sch.compute_next_due(schedule, None)

        self.assertEqual(below, {"due_at": None, "usage_due": False})
        self.assertEqual(at_limit, {"due_at": None, "usage_due": True})
        self.assertIsNone(unknown["usage_due"])

    def test_negative_usage_reading_is_rejected(self) -> None:
        with self.assertRaises(sch.InvalidScheduleError):
            sch.compute_next_due(
                sch.Schedule("usage_based", interval_cycles=100),
                None,
                usage_since_completion=-1,
            )

    def test_mixed_schedule_is_due_when_either_component_fires(self) -> None:
        schedule = sch.Schedule("mixed", interval_days=30, interval_cycles=1000)
        completed = datetime(2026, 1, 1, tzinfo=timezone.utc)
        early = datetime(2026, 1, 10, tzinfo=timezone.utc)
        late = datetime(2026, 2, 5, tzinfo=timezone.utc)

        usage_fired = sch.compute_next_due(schedule, completed, usage_since_completion=1200)
        time_fired = sch.compute_next_due(schedule, completed, usage_since_completion=10)

        self.assertEqual(usage_fired["due_at"], datetime(2026, 1, 31, tzinfo=timezone.utc))
        self.assertTrue(sch.is_due(usage_fired, early))
        self.assertFalse(sch.is_due(time_fired, early))
        self.assertTrue(sch.is_due(time_fired, late))

    def test_schedule_from_row(self) -> None:
        schedule = sch.Schedule.from_row(
            {"schedule_type": "mixed", "interval_days": 90, "interval_cycles": 20000}
        )
        self.assertTrue(schedule.uses_time)
        self.assertTrue(schedule.uses_usage)


class RunDueDateTests(unittest.TestCase):
    def test_daily_and_weekly_frequencies(self) -> None:
        start = datetime(2026, 6, 1, 6, 0, tzinfo=timezone.utc)
        self.assertEqual(sch.compute_run_due_date("daily", start), start + timedelta(days=1))
        self.assertEqual(sch.compute_run_due_date("weekly", start), start + timedelta(days=7))

    def test_monthly_frequency_clamps_to_month_end(self) -> None:
        start = datetime(2026, 1, 31, 6, 0, tzinfo=timezone.utc)
        due = sch.compute_run_due_date("monthly", start)
        self.assertEqual((due.year, due.month, due.day, due.hour), (2026, 2, 28, 6))

    def test_quarterly_frequency(self) -> None:
        due = sch.compute_run_due_date("quarterly", datetime(2026, 2, 15, tzinfo=timezone.utc))
        self.assertEqual((due.year, due.month, due.day), (2026, 5, 15))

    def test_one_off_checklists_have_no_due_date(self) -> None:
        self.assertIsNone(sch.compute_run_due_date("once", datetime(2026, 6, 1, tzinfo=timezone.utc)))
        self.assertIsNone(sch.compute_run_due_date(None, datetime(2026, 6, 1, tzinfo=timezone.utc)))

    def test_unknown_frequency_is_rejected(self) -> None:
        with self.assertRaises(sch.InvalidScheduleError):
            sch.compute_run_due_date("fortnightly", datetime(2026, 6, 1, tzinfo=timezone.utc))


if __name__ == "__main__":
    unittest.main()
