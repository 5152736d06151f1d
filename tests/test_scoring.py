import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from compliance_tracking.services import scoring as sc

PRESS_DEFINITION = {
    "sections": [
        {
            "id": "safety",
            "title": "Safety",
            "items": [
                {"id": "guard", "kind": "yes_no", "label": "Guard closed", "critical": True},
                {"id": "pressure", "kind": "numeric", "label": "Pressure", "min_value": 10, "max_value": 20},
                {"id": "remarks", "kind": "text", "label": "Remarks"},
            ],
        },
        {
            "id": "cleaning",
            "title": "Cleaning",
            "items": [
                {"id": "estop", "kind": "yes_no", "label": "E-stop tested", "critical": True},
                {"id": "floor", "kind": "yes_no", "label": "Floor clean"},
                {"id": "signoff", "kind": "text", "label": "Sign-off", "required": True},
            ],
        },
    ]
}


def _answer(item_id, value, answered_at=None, run_id="run-1"):
    return {"run_id": run_id, "item_id": item_id, "value": value, "answered_at": answered_at}


class NormalizeDefinitionTests(unittest.TestCase):
    def test_legacy_aliases_collapse_to_canonical_fields(self) -> None:
        definition = sc.normalize_template_definition(
            {
                "sections": [
                    {
                        "title": "Hydraulics",
                        "items": [
                            {
                                "id": "oil",
                                "type": "numeric",
                                "question": "Oil temperature",
                                "minValue": 30,
                                "maxValue": "55",
                                "hint": "Read the gauge on the tank",
                            }
                        ],
                    }
                ]
            }
        )
        item = definition.item("oil")
        self.assertEqual(definition.sections[0].id, "section-1")
        self.assertEqual(item.kind, "numeric")
        self.assertEqual(item.label, "Oil temperature")
        self.assertEqual((item.min_value, item.max_value), (30.0, 55.0))
        self.assertEqual(item.help_text, "Read the gauge on the tank")

    def test_definition_accepts_json_text(self) -> None:
        definition = sc.normalize_template_definition(
            '{"sections": [{"id": "s", "items": [{"id": "a", "kind": "yes_no"}]}]}',
            template_id="tpl-1",
            version=2,
        )
        self.assertEqual([item.id for item in definition.items], ["a"])
        self.assertEqual((definition.template_id, definition.version), ("tpl-1", 2))

    def test_duplicate_item_ids_are_rejected(self) -> None:
        raw = {
            "sections": [
                {"id": "a", "items": [{"id": "x", "kind": "yes_no"}]},
                {"id": "b", "items": [{"id": "x", "kind": "text"}]},
            ]
        }
        with self.assertRaises(ValueError):
            sc.normalize_template_definition(raw)

    def test_unknown_item_kind_is_rejected(self) -> None:
        raw = {"sections": [{"id": "a", "items": [{"id": "x", "kind": "signature"}]}]}
        with self.assertRaises(ValueError):
            sc.normalize_template_definition(raw)

    def test_payload_round_trip_keeps_items(self) -> None:
        definition = sc.normalize_template_definition(PRESS_DEFINITION)
        again = sc.normalize_template_definition(sc.definition_to_payload(definition))
        self.assertEqual(again, definition)

    def test_missing_definition_row_raises_not_found(self) -> None:
        with self.assertRaises(sc.TemplateNotFoundError):
            sc.load_definition(None)
        with self.assertRaises(sc.TemplateNotFoundError):
            sc.load_definition({"template_id": "tpl-1", "version": 1, "json_definition": None})


class EvaluateAnswerTests(unittest.TestCase):
    def test_yes_no_answers(self) -> None:
        item = sc.TemplateItem(id="a", kind="yes_no", label="A")
        self.assertEqual(sc.evaluate_answer(item, True), "pass")
        self.assertEqual(sc.evaluate_answer(item, " Yes "), "pass")
        self.assertEqual(sc.evaluate_answer(item, False), "fail")
        self.assertEqual(sc.evaluate_answer(item, "NO"), "fail")
        self.assertEqual(sc.evaluate_answer(item, None), "unanswered")

    def test_numeric_bounds_are_inclusive(self) -> None:
        item = sc.TemplateItem(id="p", kind="numeric", label="P", min_value=10, max_value=20)
        self.assertEqual(sc.evaluate_answer(item, 10), "pass")
        self.assertEqual(sc.evaluate_answer(item, "20"), "pass")
        self.assertEqual(sc.evaluate_answer(item, 9.99), "fail")
        self.assertEqual(sc.evaluate_answer(item, 20.5), "fail")
        self.assertEqual(sc.evaluate_answer(item, "n/a"), "fail")
        self.assertEqual(sc.evaluate_answer(item, ""), "unanswered")

    def test_numeric_without_bounds_passes_any_number(self) -> None:
        item = sc.TemplateItem(id="p", kind="numeric", label="P", min_value=5)
        self.assertEqual(sc.evaluate_answer(item, 5000), "pass")

    def test_text_and_selection_pass_when_present(self) -> None:
        text = sc.TemplateItem(id="t", kind="text", label="T")
        selection = sc.TemplateItem(id="s", kind="selection", label="S", options=("ok", "worn"))
        self.assertEqual(sc.evaluate_answer(text, "all good"), "pass")
        self.assertEqual(sc.evaluate_answer(text, "   "), "unanswered")
        self.assertEqual(sc.evaluate_answer(selection, "worn"), "pass")


class ScoreRunTests(unittest.TestCase):
    def setUp(self) -> None:
        self.definition = sc.normalize_template_definition(PRESS_DEFINITION, template_id="tpl-press", version=1)

    def test_critical_failure_with_one_item_unanswered(self) -> None:
        answers = [
            _answer("guard", False),
            _answer("pressure", 15),
            _answer("remarks", "ok"),
            _answer("estop", True),
            _answer("floor", "yes"),
        ]
        score = sc.score_run(self.definition, answers)

        self.assertEqual(score["total_items"], 6)
        self.assertEqual(score["answered_items"], 5)
        self.assertEqual(score["failed_items"], 1)
        self.assertEqual(score["passed_items"], 4)
        self.assertTrue(score["critical_failure"])
        self.assertEqual(score["critical_failed_items"], ["guard"])
        self.assertEqual(score["missing_required"], ["signoff"])
        self.assertEqual([row["item_id"] for row in score["per_item"]][:2], ["guard", "pressure"])
        self.assertEqual(score["per_item"][3]["section_id"], "cleaning")

    def test_non_critical_failure_does_not_flag_critical(self) -> None:
        score = sc.score_run(self.definition, [_answer("pressure", 35), _answer("floor", False)])
        self.assertEqual(score["failed_items"], 2)
        self.assertFalse(score["critical_failure"])

    def test_later_answer_replaces_earlier_one(self) -> None:
        answers = [
            _answer("guard", False, "2026-06-01T08:00:00+00:00"),
            _answer("guard", True, "2026-06-01T08:05:00+00:00"),
        ]
        score = sc.score_run(self.definition, answers)
        self.assertFalse(score["critical_failure"])
        self.assertEqual(score["answered_items"], 1)

    def test_equal_or_older_duplicate_keeps_first_answer(self) -> None:
        same_time = [
            _answer("guard", False, "2026-06-01T08:00:00+00:00"),
            _answer("guard", True, "2026-06-01T08:00:00+00:00"),
        ]
        older = [
            _answer("guard", False, "2026-06-01T08:00:00+00:00"),
            _answer("guard", True, "2026-06-01T07:00:00+00:00"),
        ]
        self.assertTrue(sc.score_run(self.definition, same_time)["critical_failure"])
        self.assertTrue(sc.score_run(self.definition, older)["critical_failure"])

    def test_answers_for_unknown_items_are_ignored(self) -> None:
        score = sc.score_run(self.definition, [_answer("retired-item", False)])
        self.assertEqual(score["answered_items"], 0)
        self.assertEqual(score["failed_items"], 0)

    def test_scoring_is_idempotent(self) -> None:
        answers = [_answer("guard", True), _answer("pressure", 12)]
        self.assertEqual(sc.score_run(self.definition, answers), sc.score_run(self.definition, answers))

    def test_missing_definition_raises_not_found(self) -> None:
        with self.assertRaises(sc.TemplateNotFoundError):
            sc.score_run(None, [_answer("guard", True)])

    def test_completion_blockers(self) -> None:
        score = sc.score_run(self.definition, [_answer("estop", "no")])
        blockers = sc.completion_blockers(score)
        self.assertEqual(
            blockers,
            ["Critical item failed: estop", "Required items unanswered: signoff"],
        )
        clean = sc.score_run(self.definition, [_answer("signoff", "A. Nowak")])
        self.assertEqual(sc.completion_blockers(clean), [])


if __name__ == "__main__":
    unittest.main()
