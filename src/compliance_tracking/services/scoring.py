from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Any, Callable

from compliance_tracking.services.normalize import normalize_key, parse_timestamp, to_float, to_utc

KIND_YES_NO = "yes_no"
KIND_NUMERIC = "numeric"
KIND_TEXT = "text"
KIND_SELECTION = "selection"

ITEM_KINDS = (KIND_YES_NO, KIND_NUMERIC, KIND_TEXT, KIND_SELECTION)

OUTCOME_PASS = "pass"
OUTCOME_FAIL = "fail"
OUTCOME_UNANSWERED = "unanswered"

_YES_VALUES = {"yes"}
_NO_VALUES = {"no"}

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)

LOGGER = logging.getLogger(__name__)


class TemplateNotFoundError(LookupError):
    """Raised when a run references a template version that cannot be loaded."""


@dataclass(frozen=True)
class TemplateItem:
    id: str
    kind: str
    label: str
    required: bool = False
    critical: bool = False
    min_value: float | None = None
    max_value: float | None = None
    unit: str | None = None
    options: tuple[str, ...] = ()
    help_text: str | None = None


@dataclass(frozen=True)
class TemplateSection:
    id: str
    title: str
    items: tuple[TemplateItem, ...] = ()


@dataclass(frozen=True)
class TemplateDefinition:
    sections: tuple[TemplateSection, ...] = ()
    template_id: str | None = None
    version: int | None = None
    frequency: str | None = None

    @property
    def items(self) -> list[TemplateItem]:
        return [item for section in self.sections for item in section.items]

    def item(self, item_id: str) -> TemplateItem | None:
        for candidate in self.items:
            if candidate.id == item_id:
                return candidate
        return None


def _first_present(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _normalize_item(raw: dict[str, Any]) -> TemplateItem:
    item_id = str(raw.get("id") or "").strip()
    if not item_id:
        raise ValueError("Checklist item is missing its id.")
    kind = normalize_key(str(_first_present(raw, "kind", "type") or KIND_YES_NO))
    if kind not in ITEM_KINDS:
        raise ValueError(f"Item {item_id!r} has unknown kind {kind!r}.")
    options = raw.get("options") or ()
    return TemplateItem(
        id=item_id,
        kind=kind,
        label=str(_first_present(raw, "label", "question") or ""),
        required=bool(raw.get("required", False)),
        critical=bool(raw.get("critical", False)),
        min_value=to_float(_first_present(raw, "min_value", "minValue")),
        max_value=to_float(_first_present(raw, "max_value", "maxValue")),
        unit=raw.get("unit"),
        options=tuple(str(option) for option in options),
        help_text=_first_present(raw, "help_text", "helpText", "hint", "guidance"),
    )


def normalize_template_definition(
    raw: dict[str, Any] | str | None,
    template_id: str | None = None,
    version: int | None = None,
    frequency: str | None = None,
) -> TemplateDefinition:
    """Build the canonical definition from stored template JSON.

    Legacy aliases (``question``, ``minValue``, ``hint`` ...) collapse into one
    field each. Item ids must be unique across the whole template version.
    """
    if isinstance(raw, str):
        raw = json.loads(raw)
    raw = raw or {}

    sections: list[TemplateSection] = []
    seen_ids: set[str] = set()
    for index, raw_section in enumerate(raw.get("sections") or []):
        section_id = str(raw_section.get("id") or f"section-{index + 1}")
        items: list[TemplateItem] = []
        for raw_item in raw_section.get("items") or []:
            item = _normalize_item(raw_item)
            if item.id in seen_ids:
                raise ValueError(f"Duplicate item id {item.id!r} in template definition.")
            seen_ids.add(item.id)
            items.append(item)
        sections.append(
            TemplateSection(
                id=section_id,
                title=str(raw_section.get("title") or ""),
                items=tuple(items),
            )
        )
    return TemplateDefinition(
        sections=tuple(sections),
        template_id=template_id,
        version=version,
        frequency=frequency,
    )


def definition_to_payload(definition: TemplateDefinition) -> dict[str, Any]:
    return {
        "sections": [
            {
                "id": section.id,
                "title": section.title,
                "items": [
                    {
                        "id": item.id,
                        "kind": item.kind,
                        "label": item.label,
                        "required": item.required,
                        "critical": item.critical,
                        "min_value": item.min_value,
                        "max_value": item.max_value,
                        "unit": item.unit,
                        "options": list(item.options),
                        "help_text": item.help_text,
                    }
                    for item in section.items
                ],
            }
            for section in definition.sections
        ]
    }


def load_definition(template_row: dict[str, Any] | None) -> TemplateDefinition:
    if not template_row or template_row.get("json_definition") in (None, ""):
        template_id = (template_row or {}).get("template_id") or (template_row or {}).get("id")
        raise TemplateNotFoundError(f"Template definition not found: {template_id!r}.")
    return normalize_template_definition(
        template_row["json_definition"],
        template_id=template_row.get("template_id") or template_row.get("id"),
        version=template_row.get("version"),
        frequency=template_row.get("frequency"),
    )


def _evaluate_yes_no(item: TemplateItem, value: Any) -> str:
    if value is True:
        return OUTCOME_PASS
    if value is False:
        return OUTCOME_FAIL
    if isinstance(value, str):
        key = normalize_key(value)
        if key in _YES_VALUES:
            return OUTCOME_PASS
        if key in _NO_VALUES:
            return OUTCOME_FAIL
    return OUTCOME_UNANSWERED


def _evaluate_numeric(item: TemplateItem, value: Any) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        return OUTCOME_UNANSWERED
    number = to_float(value)
    if number is None:
        return OUTCOME_FAIL
    if item.min_value is not None and number < item.min_value:
        return OUTCOME_FAIL
    if item.max_value is not None and number > item.max_value:
        return OUTCOME_FAIL
    return OUTCOME_PASS


def _evaluate_free_value(item: TemplateItem, value: Any) -> str:
    if value is None:
        return OUTCOME_UNANSWERED
    if isinstance(value, str) and not value.strip():
        return OUTCOME_UNANSWERED
    return OUTCOME_PASS


_EVALUATORS: dict[str, Callable[[TemplateItem, Any], str]] = {
    KIND_YES_NO: _evaluate_yes_no,
    KIND_NUMERIC: _evaluate_numeric,
    KIND_TEXT: _evaluate_free_value,
    KIND_SELECTION: _evaluate_free_value,
}


def evaluate_answer(item: TemplateItem, value: Any) -> str:
    return _EVALUATORS[item.kind](item, value)


def _answered_at(answer: dict[str, Any]) -> datetime:
    parsed = parse_timestamp(answer.get("answered_at"))
    return to_utc(parsed) if parsed else _OLDEST


def latest_answers(answers: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """One answer per item id; a later ``answered_at`` replaces an earlier one."""
    by_item: dict[str, dict[str, Any]] = {}
    for answer in answers:
        item_id = str(answer.get("item_id") or "")
        if not item_id:
            continue
        current = by_item.get(item_id)
        if current is None:
            by_item[item_id] = answer
            continue
        LOGGER.debug("Duplicate answers for item %s in run %s", item_id, answer.get("run_id"))
        if _answered_at(answer) > _answered_at(current):
            by_item[item_id] = answer
    return by_item


def score_run(
    definition: TemplateDefinition | None,
    answers: list[dict[str, Any]],
) -> dict[str, Any]:
    if definition is None:
        raise TemplateNotFoundError("Run cannot be scored without its template version.")

    by_item = latest_answers(answers)
    per_item: list[dict[str, Any]] = []
    answered_items = 0
    failed_items = 0
    passed_items = 0
    critical_failed: list[str] = []
    missing_required: list[str] = []

    for section in definition.sections:
        for item in section.items:
            answer = by_item.get(item.id)
            value = answer.get("value") if answer else None
            outcome = evaluate_answer(item, value)
            if value is not None:
                answered_items += 1
            if outcome == OUTCOME_FAIL:
                failed_items += 1
                if item.critical:
                    critical_failed.append(item.id)
            elif outcome == OUTCOME_PASS:
                passed_items += 1
            elif item.required:
                missing_required.append(item.id)
            per_item.append(
                {
                    "item_id": item.id,
                    "section_id": section.id,
                    "outcome": outcome,
                    "critical": item.critical,
                    "required": item.required,
                }
            )

    return {
        "total_items": len(per_item),
        "answered_items": answered_items,
        "failed_items": failed_items,
        "passed_items": passed_items,
        "critical_failure": bool(critical_failed),
        "critical_failed_items": critical_failed,
        "missing_required": missing_required,
        "per_item": per_item,
    }


def completion_blockers(score: dict[str, Any]) -> list[str]:
    blockers: list[str] = []
    if score.get("critical_failure"):
        failed = ", ".join(score.get("critical_failed_items") or [])
        blockers.append(f"Critical item failed: {failed}")
    missing = score.get("missing_required") or []
    if missing:
        blockers.append(f"Required items unanswered: {', '.join(missing)}")
    return blockers
