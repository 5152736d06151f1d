import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from compliance_tracking.app.pages import maintenance as page

NOW = datetime(2026, 6, 20, 12, 0, tzinfo=timezone.utc)


class DueLabelTests(unittest.TestCase):
    def test_open_task_labels(self) -> None:
        past = {"status": "overdue", "due_at": (NOW - timedelta(days=5)).isoformat()}
        soon = {"status": "due", "due_at": (NOW + timedelta(days=2)).isoformat()}
        self.assertEqual(page._due_label(past, NOW), "5 d overdue")
        self.assertEqual(page._due_label(soon, NOW), "in 2 d")

    def test_closed_tasks_have_no_due_label(self) -> None:
        for status in ("cancelled", "completed"):
            with self.subTest(status=status):
                task = {"status": status, "due_at": (NOW - timedelta(days=5)).isoformat()}
                self.assertEqual(page._due_label(task, NOW), "-")

    def test_usage_only_task_has_no_due_label(self) -> None:
        self.assertEqual(page._due_label({"status": "due", "due_at": None}, NOW), "-")


if __name__ == "__main__":
    unittest.main()
