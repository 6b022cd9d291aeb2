"""Evaluation of condition operators against lead profile fields."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..schemas import ConditionConfig, ConditionOperator, LeadProfile

__all__ = ["evaluate_condition", "resolve_field"]

_MISSING = object()

# Accepted spellings for top-level fields coming from the visual builder.
_FIELD_ALIASES = {
    "firstName": "first_name",
    "lastName": "last_name",
    "scoreLevel": "score_level",
    "customFields": "custom_fields",
}


def resolve_field(lead: LeadProfile, path: str) -> Any:
    """Return the value at a dotted ``path`` on the lead, or ``None`` when absent."""

    head, *rest = path.split(".")
    head = _FIELD_ALIASES.get(head, head)

    # Unknown top-level names fall back to custom fields.
    if head in LeadProfile.model_fields:
        current: Any = getattr(lead, head)
    else:
        current = lead.custom_fields.get(head)

    for part in rest:
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING:
            return None
    return current


def _is_set(value: Any) -> bool:
    if value is None or value == "":
        return False
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) > 0
    return True


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if value is None:
        return []
    return [item.strip() for item in str(value).split(",")]


def _contains(field_value: Any, expected: Any) -> bool:
    if field_value is None:
        return False
    if isinstance(field_value, (list, tuple, set)):
        return expected in field_value
    return str(expected) in str(field_value)


def _compare(operator: ConditionOperator, field_value: Any, expected: Any) -> bool:
    left = float(field_value)
    right = float(expected)
    if operator == ConditionOperator.GREATER_THAN:
        return left > right
    if operator == ConditionOperator.LESS_THAN:
        return left < right
    if operator == ConditionOperator.GREATER_OR_EQUAL:
        return left >= right
    return left <= right


def evaluate_condition(lead: LeadProfile, config: ConditionConfig) -> bool:
    """Evaluate a condition; anything unconfigured or malformed is ``False``."""

    if not config.field or config.operator is None:
        return False

    field_value = resolve_field(lead, config.field)
    expected = config.value
    operator = config.operator

    if operator == ConditionOperator.EQUALS:
        return field_value == expected
    if operator == ConditionOperator.NOT_EQUALS:
        return field_value != expected
    if operator == ConditionOperator.CONTAINS:
        return _contains(field_value, expected)
    if operator == ConditionOperator.NOT_CONTAINS:
        return not _contains(field_value, expected)
    if operator in (
        ConditionOperator.GREATER_THAN,
        ConditionOperator.LESS_THAN,
        ConditionOperator.GREATER_OR_EQUAL,
        ConditionOperator.LESS_OR_EQUAL,
    ):
        if field_value is None or expected is None or isinstance(field_value, bool):
            return False
        try:
            return _compare(operator, field_value, expected)
        except (TypeError, ValueError):
            return False
    if operator == ConditionOperator.IS_SET:
        return _is_set(field_value)
    if operator == ConditionOperator.IS_NOT_SET:
        return not _is_set(field_value)
    if operator == ConditionOperator.IN_LIST:
        return field_value in _as_list(expected)
    if operator == ConditionOperator.NOT_IN_LIST:
        return field_value not in _as_list(expected)
    return False
