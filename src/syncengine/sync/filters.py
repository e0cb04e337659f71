"""
Filter evaluator: decides whether a local record is in scope for a mapping.

A record is in scope iff it satisfies every condition. Conditions are
validated as a whole before any of them is evaluated, so a misconfigured
operator is always reported, even when an earlier condition already fails.
"""
from numbers import Number
from typing import Any, Callable, Dict, List, Mapping

from syncengine.models.schemas import FilterCondition
from syncengine.sync.errors import FilterConfigurationError


def _comparable(a: Any, b: Any) -> bool:
    # bool is a Number subclass; keep True/False out of ordering comparisons
    if isinstance(a, bool) or isinstance(b, bool):
        return False
    if isinstance(a, Number) and isinstance(b, Number):
        return True
    return isinstance(a, str) and isinstance(b, str)


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def op(actual: Any, expected: Any) -> bool:
        return _comparable(actual, expected) and compare(actual, expected)
    return op


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str) and isinstance(expected, str):
        return expected.lower() in actual.lower()
    return False


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda actual, expected: actual == expected,
    "neq": lambda actual, expected: actual != expected,
    "in": lambda actual, expected: actual in expected,
    "not_in": lambda actual, expected: actual not in expected,
    "gt": _ordered(lambda a, b: a > b),
    "gte": _ordered(lambda a, b: a >= b),
    "lt": _ordered(lambda a, b: a < b),
    "lte": _ordered(lambda a, b: a <= b),
    "contains": _contains,
    "is_null": lambda actual, _expected: actual is None,
    "is_not_null": lambda actual, _expected: actual is not None,
}

_LIST_OPERATORS = {"in", "not_in"}


def validate_filter_conditions(conditions: List[FilterCondition]) -> None:
    """
    Raises:
        FilterConfigurationError: on an unknown operator, a missing field name,
            or a non-list value for in/not_in.
    """
    for cond in conditions:
        if not cond.field:
            raise FilterConfigurationError("Filter condition has no field")
        if cond.operator not in OPERATORS:
            raise FilterConfigurationError(
                f"Unknown filter operator '{cond.operator}' on field '{cond.field}'. "
                f"Available: {sorted(OPERATORS)}"
            )
        if cond.operator in _LIST_OPERATORS and not isinstance(cond.value, list):
            raise FilterConfigurationError(
                f"Operator '{cond.operator}' on field '{cond.field}' needs a list value"
            )


def evaluate_filter_conditions(
    record: Mapping[str, Any], conditions: List[FilterCondition]
) -> bool:
    """Return True iff the record satisfies all conditions (empty list → True)."""
    validate_filter_conditions(conditions)
    return all(
        OPERATORS[cond.operator](record.get(cond.field), cond.value)
        for cond in conditions
    )


def filter_records(
    records: List[Mapping[str, Any]], conditions: List[FilterCondition]
) -> List[Mapping[str, Any]]:
    """Records in scope, in input order."""
    validate_filter_conditions(conditions)
    if not conditions:
        return list(records)
    return [
        r for r in records
        if all(OPERATORS[c.operator](r.get(c.field), c.value) for c in conditions)
    ]
