import contextlib
import io
import json
import os
import sys
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from compliance_tracking.cli import report as cli
from compliance_tracking.data.db import connect_memory, init_db
from compliance_tracking.data.repositories import (
    AnswerRepository,
    MachineRepository,
    RunRepository,
    TemplateRepository,
    UserRepository,
)

NOW = datetime(2026, 6, 20, 12, 0, tzinfo=timezone.utc)

DEFINITION = {
    "sections": [
        {
            "id": "safety",
            "items": [
                {"id": "guard", "kind": "yes_no", "critical": True},
                {"id": "pressure", "kind": "numeric", "min_value": 10, "max_value": 20},
            ],
        }
    ]
}


class BuildReportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.con = connect_memory()
        init_db(self.con)
        UserRepository(self.con).create_user({"id": "u-anna", "name": "Anna", "email": "anna@example.com"})
        MachineRepository(self.con).create_machine({"id": "m-01", "name": "Press M01"})
        MachineRepository(self.con).create_machine({"id": "m-02", "name": "Press M02"})
        self.template_id = TemplateRepository(self.con).create_template(
            {"name": "Daily press check", "status": "active", "frequency": "daily", "json_definition": DEFINITION},
            NOW - timedelta(days=90),
        )

    def tearDown(self) -> None:
        self.con.close()

    def _run(self, started_at: datetime, answers: dict, complete: bool = True) -> str:
        runs = RunRepository(self.con)
        run_id = runs.start_run(
            {"template_id": self.template_id, "machine_id": "m-01", "user_id": "u-anna"}, started_at
        )
        for item_id, value in answers.items():
            AnswerRepository(self.con).upsert_answer(
                {"run_id": run_id, "item_id": item_id, "value": value}, started_at
            )
        if complete:
            runs.complete_run(run_id, started_at + timedelta(minutes=15))
        return run_id

    def test_report_from_stored_runs(self) -> None:
        self._run(NOW - timedelta(days=2), {"guard": False, "pressure": 35})
        self._run(NOW - timedelta(days=1), {"guard": True, "pressure": 15})
        self._run(NOW - timedelta(hours=3), {"guard": True}, complete=False)
        self._run(NOW - timedelta(days=70), {"guard": "no"})

        report = cli.build_report(self.con, 30, NOW)

        self.assertEqual(report["stats"]["total_checklists"], 3)
        self.assertEqual(report["stats"]["completed_checklists"], 2)
        self.assertEqual(report["stats"]["in_progress"], 1)
        self.assertEqual(report["stats"]["failed_checks"], 2)
        machines = {row["id"]: row for row in report["machine_stats"]}
        self.assertEqual(machines["m-01"]["compliance"], 67)
        self.assertEqual(machines["m-02"]["compliance"], 100)
        by_month = {row["month"]: row["total"] for row in report["monthly_data"]}
        self.assertEqual(by_month["Apr"], 1)
        self.assertEqual(by_month["Jun"], 3)
        self.assertEqual(report["recent_activity"][0]["type"], "checklist_started")


class MainTests(unittest.TestCase):
    def _main(self, env: dict, argv: list[str]) -> tuple[int, str]:
        out = io.StringIO()
        with mock.patch.dict(os.environ, env), contextlib.redirect_stdout(out):
            code = cli.main(argv)
        return code, out.getvalue()

    def test_seed_then_report_and_tasks(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env = {"COMPLIANCE_TRACKING_DB_PATH": str(Path(tmp) / "app.db")}

            code, _ = self._main(env, ["seed", str(ROOT / "sample_data")])
            self.assertEqual(code, 0)

            code, output = self._main(env, ["report", "--days", "7", "--now", "2026-06-20T12:00:00"])
            self.assertEqual(code, 0)
            report = json.loads(output)
            self.assertEqual(report["window"]["days"], 7)
            self.assertEqual(report["stats"]["total_checklists"], 0)
            self.assertEqual({row["compliance"] for row in report["machine_stats"]}, {100})

            code, output = self._main(env, ["tasks"])
            self.assertEqual(code, 0)
            self.assertIn("Grease tie bars", output)

    def test_invalid_now_returns_error_code(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env = {"COMPLIANCE_TRACKING_DB_PATH": str(Path(tmp) / "app.db")}
            with self.assertLogs("compliance_tracking.cli.report", level="ERROR"):
                code, _ = self._main(env, ["report", "--now", "yesterday"])
            self.assertEqual(code, 1)

    def test_report_days_fall_back_on_invalid_env(self) -> None:
        with mock.patch.dict(os.environ, {"COMPLIANCE_TRACKING_REPORT_DAYS": "many"}):
            self.assertEqual(cli._default_window_days(), 30)
        with mock.patch.dict(os.environ, {"COMPLIANCE_TRACKING_REPORT_DAYS": "90"}):
            self.assertEqual(cli._default_window_days(), 90)


if __name__ == "__main__":
    unittest.main()
