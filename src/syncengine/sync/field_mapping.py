"""
Field mapping evaluator: local record → external-shaped payload.

Pure functions only. No DB or network access, so identical inputs always
produce an identical payload (retries resend exactly what the first attempt
sent).

Rules:
  - each rule reads exactly one local field and writes one external field
  - local fields with no rule are dropped
  - a rule whose local field is missing from the record yields None
  - None passes through every transform unchanged
  - payload keys follow rule order
"""
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping

from syncengine.models.schemas import FieldMappingRule
from syncengine.sync.errors import FieldMappingConfigError, TransformError

_TRUE_STRINGS = {"true", "1", "yes", "y", "t"}
_FALSE_STRINGS = {"false", "0", "no", "n", "f", ""}


def _to_number(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        return float(text)


def _to_integer(value: Any) -> int:
    number = _to_number(value)
    if isinstance(number, float) and not number.is_integer():
        raise ValueError(f"{value!r} is not a whole number")
    return int(number)


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ValueError(f"{value!r} is not a boolean")


def _to_date(value: Any) -> str:
    """ISO date (YYYY-MM-DD) from a date, datetime or ISO string."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    # Accept "YYYY-MM-DD", "YYYY-MM-DDTHH:MM:SS[.f]" and the space-separated form
    return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()


def _to_cents(value: Any) -> int:
    return int(round(float(_to_number(value)) * 100))


TRANSFORMS: Dict[str, Callable[[Any], Any]] = {
    "uppercase": lambda v: str(v).upper(),
    "lowercase": lambda v: str(v).lower(),
    "trim": lambda v: str(v).strip(),
    "to_string": str,
    "to_number": _to_number,
    "to_integer": _to_integer,
    "to_boolean": _to_boolean,
    "to_date": _to_date,
    "to_cents": _to_cents,
}


def validate_field_mappings(rules: List[FieldMappingRule]) -> None:
    """
    Reject rule lists that can never work, before any record is processed.

    Raises:
        FieldMappingConfigError: on unknown transforms, empty field names, or
            two rules writing the same external field.
    """
    seen = set()
    for rule in rules:
        if not rule.local_field or not rule.external_field:
            raise FieldMappingConfigError("Field mapping rules need both local_field and external_field")
        if rule.transform is not None and rule.transform not in TRANSFORMS:
            raise FieldMappingConfigError(
                f"Unknown transform '{rule.transform}' for field '{rule.local_field}'. "
                f"Available: {sorted(TRANSFORMS)}"
            )
        if rule.external_field in seen:
            raise FieldMappingConfigError(f"External field '{rule.external_field}' is mapped twice")
        seen.add(rule.external_field)


def apply_rule(record: Mapping[str, Any], rule: FieldMappingRule) -> Any:
    """Evaluate one rule against a record."""
    value = record.get(rule.local_field)
    if value is None or rule.transform is None:
        return value
    fn = TRANSFORMS.get(rule.transform)
    if fn is None:
        raise FieldMappingConfigError(f"Unknown transform '{rule.transform}'")
    try:
        return fn(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise TransformError(rule.local_field, rule.transform, value) from exc


def apply_field_mappings(
    record: Mapping[str, Any], rules: List[FieldMappingRule]
) -> Dict[str, Any]:
    """
    Transform a local record into an external payload.

    Args:
        record: Local row as field → value.
        rules: Field mapping rules, already validated.

    Returns:
        Dict of external field → transformed value, in rule order.

    Raises:
        TransformError: if a value cannot be converted by its transform.
    """
    return {rule.external_field: apply_rule(record, rule) for rule in rules}
