"""
Validation Engine

Computes which mandatory custom fields still block a task from leaving its
current column. Stateless; presentation layers call it to render a live
checklist before the user tries to advance.
"""

from typing import Any, List, Tuple

from .field_values import FieldValue
from .pipeline_model import Channel, CustomField, Task


def is_blank_value(value: Any) -> bool:
    """Absent, None, or a string that is empty or whitespace-only."""
    if isinstance(value, FieldValue):
        return value.is_blank()
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


def required_fields(task: Task, channel: Channel) -> List[CustomField]:
    """Fields required in the task's current column, in field order."""
    return [f for f in channel.sorted_custom_fields() if f.is_required_in(task.column_id)]


def missing_required_fields(task: Task, channel: Channel) -> List[CustomField]:
    """Required fields of the current column whose value is blank."""
    return [
        f for f in required_fields(task, channel)
        if is_blank_value(task.custom_field_values.get(f.id))
    ]


def required_fields_checklist(task: Task, channel: Channel) -> List[Tuple[CustomField, bool]]:
    """(field, satisfied) pairs for every field required in the current column."""
    return [
        (f, not is_blank_value(task.custom_field_values.get(f.id)))
        for f in required_fields(task, channel)
    ]
