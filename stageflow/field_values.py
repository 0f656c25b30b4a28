"""
Typed custom field values.

Custom field values are a tagged variant keyed by the field's declared type.
Raw input is coerced at the edit boundary (``coerce_field_value``); stored
values carry their tag through serialization so dates come back as datetimes
and strings that merely look like dates stay strings.

Legacy payloads written before values were tagged hold the bare value. Those
are read leniently (``FieldValue.from_dict``) and later re-typed against the
channel's field definitions (``retag_legacy_value``).
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Sequence, TYPE_CHECKING
from urllib.parse import urlparse

from .errors import FieldValueError

if TYPE_CHECKING:  # pragma: no cover
    from .pipeline_model import CustomField


class CustomFieldType(str, Enum):
    """Declared type of a custom field."""
    LINK = "link"
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    DROPDOWN = "dropdown"
    CHECKBOX = "checkbox"


# -----------------------------------------------------------------------------
# Timestamp helpers
# -----------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Leniently parse a stored timestamp.

    Accepts datetimes, dates, and ISO-8601 strings including the trailing
    ``Z`` form written by JavaScript's ``toISOString``. Naive values are
    taken as UTC. Returns None for empty input; raises ValueError otherwise.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Not a timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# -----------------------------------------------------------------------------
# Tagged value
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldValue:
    """A custom field value tagged with the type it was validated against."""
    field_type: CustomFieldType
    value: Any = None

    def is_blank(self) -> bool:
        if self.value is None:
            return True
        return isinstance(self.value, str) and not self.value.strip()

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if self.field_type == CustomFieldType.DATE and isinstance(value, datetime):
            value = value.isoformat()
        return {"type": self.field_type.value, "value": value}

    @classmethod
    def from_dict(cls, data: Any) -> "FieldValue":
        """Read a tagged value, or wrap a legacy bare value."""
        if isinstance(data, dict) and "type" in data and "value" in data:
            field_type = CustomFieldType(data["type"])
            value = data["value"]
            if field_type == CustomFieldType.DATE:
                value = parse_datetime(value)
            return cls(field_type=field_type, value=value)
        return cls(field_type=_infer_legacy_type(data), value=data)


def _infer_legacy_type(value: Any) -> CustomFieldType:
    if isinstance(value, bool):
        return CustomFieldType.CHECKBOX
    if isinstance(value, (int, float)):
        return CustomFieldType.NUMBER
    if isinstance(value, datetime):
        return CustomFieldType.DATE
    return CustomFieldType.TEXT


# -----------------------------------------------------------------------------
# Coercion at the edit boundary
# -----------------------------------------------------------------------------

def coerce_field_value(field: "CustomField", raw: Any) -> FieldValue:
    """
    Validate ``raw`` against ``field.type`` and return the tagged value.

    ``None`` clears the field. Raises FieldValueError when the input does not
    fit the declared type.
    """
    field_type = field.type
    if raw is None or isinstance(raw, FieldValue) and raw.value is None:
        return FieldValue(field_type=field_type, value=None)
    if isinstance(raw, FieldValue):
        raw = raw.value

    if field_type == CustomFieldType.TEXT:
        if not isinstance(raw, str):
            raise FieldValueError(field.name, "expected text")
        return FieldValue(field_type, raw)

    if field_type == CustomFieldType.LINK:
        if not isinstance(raw, str):
            raise FieldValueError(field.name, "expected a link")
        link = raw.strip()
        if link:
            parsed = urlparse(link)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise FieldValueError(field.name, f"not an http(s) link: {link!r}")
        return FieldValue(field_type, link)

    if field_type == CustomFieldType.NUMBER:
        return FieldValue(field_type, _coerce_number(field.name, raw))

    if field_type == CustomFieldType.DATE:
        try:
            return FieldValue(field_type, parse_datetime(raw))
        except ValueError:
            raise FieldValueError(field.name, f"not a date: {raw!r}")

    if field_type == CustomFieldType.DROPDOWN:
        if not isinstance(raw, str):
            raise FieldValueError(field.name, "expected a dropdown option")
        _check_option(field.name, raw, field.dropdown_options)
        return FieldValue(field_type, raw)

    if field_type == CustomFieldType.CHECKBOX:
        if not isinstance(raw, bool):
            raise FieldValueError(field.name, "expected true or false")
        return FieldValue(field_type, raw)

    raise FieldValueError(field.name, f"unsupported field type {field_type!r}")


def _coerce_number(field_name: str, raw: Any) -> Any:
    if isinstance(raw, bool):
        raise FieldValueError(field_name, "expected a number")
    if isinstance(raw, (int, float)):
        return _finite(field_name, raw)
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            raise FieldValueError(field_name, f"not a number: {raw!r}")
        _finite(field_name, number)
        return int(number) if number.is_integer() and "." not in text else number
    raise FieldValueError(field_name, "expected a number")


def _finite(field_name: str, number: Any) -> Any:
    # NaN and infinities have no standard JSON form
    if isinstance(number, float) and not math.isfinite(number):
        raise FieldValueError(field_name, f"not a finite number: {number!r}")
    return number


def _check_option(field_name: str, value: str, options: Sequence[str]) -> None:
    if value.strip() and options and value not in options:
        raise FieldValueError(field_name, f"{value!r} is not one of {list(options)}")


def retag_legacy_value(field: "CustomField", stored: FieldValue) -> FieldValue:
    """
    Re-type a value read from an untagged payload against its field.

    Values that already carry the field's type are returned unchanged. A
    legacy value that cannot be coerced is kept as read.
    """
    if stored.field_type == field.type:
        return stored
    try:
        return coerce_field_value(field, stored.value)
    except FieldValueError:
        return stored
