"""Field value validation against a step's field definitions."""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Iterable, Mapping, Optional

from ..catalog import FieldDef, FieldType

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_RE = re.compile(r"^\+?[0-9 ().-]{6,20}$")


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def _check_number(field: FieldDef, value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "must be a number"
    try:
        number = float(value)
    except (TypeError, ValueError):
        return "must be a number"
    if field.min_value is not None and number < field.min_value:
        return f"must be at least {field.min_value:g}"
    if field.max_value is not None and number > field.max_value:
        return f"must be at most {field.max_value:g}"
    return None


def _check_date(value: Any) -> Optional[str]:
    if isinstance(value, (date, datetime)):
        return None
    text = str(value).strip()
    try:
        date.fromisoformat(text)
    except ValueError:
        try:
            datetime.fromisoformat(text)
        except ValueError:
            return "must be a date (YYYY-MM-DD)"
    return None


def _check_text(field: FieldDef, value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return "must be text"
    if field.min_length is not None and len(value) < field.min_length:
        return f"must be at least {field.min_length} characters"
    if field.max_length is not None and len(value) > field.max_length:
        return f"must be at most {field.max_length} characters"
    if field.field_type == FieldType.EMAIL and not EMAIL_RE.match(value):
        return "must be a valid email address"
    if field.field_type == FieldType.PHONE and not PHONE_RE.match(value):
        return "must be a valid phone number"
    if field.pattern and not re.fullmatch(field.pattern, value):
        return "has an invalid format"
    return None


def check_value(field: FieldDef, value: Any) -> Optional[str]:
    """Return an error message for ``value`` or ``None`` when it is acceptable."""
    if is_empty(value):
        return "is required" if field.required else None

    if field.field_type == FieldType.NUMBER:
        return _check_number(field, value)
    if field.field_type == FieldType.DATE:
        return _check_date(value)
    if field.field_type in (FieldType.SELECT, FieldType.RADIO):
        if field.options and str(value) not in field.option_values:
            return "is not one of the allowed options"
        return None
    if field.field_type == FieldType.CHECKBOX:
        if isinstance(value, bool):
            return "must be checked" if field.required and not value else None
        if not isinstance(value, (list, tuple)):
            return "must be a list of options"
        unknown = [v for v in value if str(v) not in field.option_values]
        if field.options and unknown:
            return "contains options that are not allowed"
        return None
    if field.field_type == FieldType.FILE:
        return None if isinstance(value, str) else "must be a file reference"
    return _check_text(field, value)


def validate_fields(
    fields: Iterable[FieldDef],
    values: Mapping[str, Any],
    only: Optional[Iterable[str]] = None,
) -> dict[str, str]:
    """Validate ``values`` against ``fields``.

    Returns a mapping of field key to error message; an empty mapping means
    the values are valid. When ``only`` is given, fields outside that subset
    are not checked at all.
    """

    subset = set(only) if only is not None else None
    errors: dict[str, str] = {}
    for field in fields:
        if subset is not None and field.key not in subset:
            continue
        error = check_value(field, values.get(field.key))
        if error:
            errors[field.key] = f"{field.label or field.key} {error}"
    return errors
