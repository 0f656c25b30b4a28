"""
Error taxonomy for the stage-transition core.

Business conditions (missing mandatory fields, refused permissions) are
returned as result values. The exceptions below are reserved for programming
and data-integrity faults.
"""

from typing import Optional


class StageflowError(Exception):
    """Base class for all stageflow errors."""


class InvalidReferenceError(StageflowError, LookupError):
    """A task, channel or column id does not resolve."""

    def __init__(self, kind: str, ref_id: Optional[str], detail: str = ""):
        self.kind = kind
        self.ref_id = ref_id
        message = f"Unknown {kind}: {ref_id!r}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ChannelConfigError(StageflowError, ValueError):
    """A channel's column pipeline violates its ordering invariants."""


class FieldValueError(StageflowError, ValueError):
    """A custom field value does not fit the field's declared type."""

    def __init__(self, field_name: str, message: str):
        self.field_name = field_name
        super().__init__(f"{field_name}: {message}")
