"""
Task editing outside of stage transitions.

Column moves happen only through the transition engine; this service covers
creation, detail edits and custom field values. Field edits go through the
permission resolver first and are coerced to the field's declared type.
"""

import logging
from datetime import datetime
from typing import Any, Optional, Tuple

from .entity_store import EntityStore
from .errors import InvalidReferenceError
from .field_values import coerce_field_value, parse_datetime
from .permission_resolver import can_access_channel, can_edit, can_manage_channel
from .pipeline_model import ActingUser, Task

logger = logging.getLogger("task_service")

TaskResult = Tuple[bool, str, Optional[Task]]

# Detail fields an editor may change directly
EDITABLE_DETAILS = frozenset({"title", "description", "assigned_to", "due_date", "notes", "links"})


class TaskService:
    """Create and edit active tasks on behalf of an acting user."""

    def __init__(self, store: EntityStore):
        self._store = store

    def create_task(
        self,
        actor: ActingUser,
        channel_id: str,
        title: str,
        column_id: Optional[str] = None,
        description: str = "",
        assigned_to: Optional[str] = None,
        due_date: Any = None,
    ) -> TaskResult:
        """
        Add a task to a channel.

        Without ``column_id`` the task starts in the first column. Without
        ``assigned_to`` it goes to the first user assigned to that column.
        """
        channel = self._store.require_channel(channel_id)
        if not can_access_channel(channel, actor):
            return False, f"User {actor.user_id} is not a member of {channel.name}", None
        if channel.archived:
            return False, f"Channel {channel.name} is archived", None
        if not title.strip():
            return False, "Task title is required", None

        if column_id is None:
            first = channel.first_column()
            if first is None:
                return False, f"Channel {channel.name} has no columns", None
            column_id = first.id

        if assigned_to is None:
            assignment = channel.assignment_for(column_id)
            if assignment and assignment.assigned_user_ids:
                assigned_to = assignment.assigned_user_ids[0]

        task = self._store.add_task(
            title=title.strip(),
            channel_id=channel_id,
            column_id=column_id,
            description=description,
            assigned_to=assigned_to,
            due_date=parse_datetime(due_date),
        )
        logger.info(f"Task created: {task.id} in {channel_id}/{column_id} (by: {actor.user_id})")
        return True, f"Task {task.title} created", task

    def set_field_value(self, task_id: str, field_id: str, raw_value: Any, actor: ActingUser) -> TaskResult:
        """
        Store a custom field value on a task.

        Raises:
            InvalidReferenceError: task, channel or field does not resolve
            FieldValueError: value does not fit the field's type
        """
        task = self._store.require_task(task_id)
        channel = self._store.require_channel(task.channel_id)
        custom_field = channel.get_custom_field(field_id)
        if custom_field is None:
            logger.error(f"Unknown custom field {field_id} on channel {channel.id}")
            raise InvalidReferenceError("custom field", field_id, f"not in channel {channel.id}")

        if not can_edit(custom_field, task, channel, actor):
            return False, f"You cannot edit {custom_field.name} in this column", None

        value = coerce_field_value(custom_field, raw_value)
        values = dict(task.custom_field_values)
        values[field_id] = value
        updated = self._store.update_task(task_id, custom_field_values=values)
        return True, f"{custom_field.name} updated", updated

    def update_details(self, task_id: str, actor: ActingUser, **changes: Any) -> TaskResult:
        task = self._store.require_task(task_id)
        channel = self._store.require_channel(task.channel_id)
        if not can_access_channel(channel, actor):
            return False, f"User {actor.user_id} is not a member of {channel.name}", None

        unknown = set(changes) - EDITABLE_DETAILS
        if unknown:
            return False, f"Cannot edit {sorted(unknown)} here", None
        if "title" in changes and not str(changes["title"] or "").strip():
            return False, "Task title is required", None
        if "due_date" in changes and not isinstance(changes["due_date"], datetime):
            changes["due_date"] = parse_datetime(changes["due_date"])

        updated = self._store.update_task(task_id, **changes)
        return True, "Task updated", updated

    def delete_task(self, task_id: str, actor: ActingUser) -> TaskResult:
        """Discard an active task without archiving it. Channel managers only."""
        task = self._store.require_task(task_id)
        channel = self._store.get_channel(task.channel_id)
        if not can_manage_channel(channel, actor):
            return False, "Only the channel manager can delete tasks", None
        self._store.delete_task(task_id)
        logger.info(f"Task deleted: {task_id} (by: {actor.user_id})")
        return True, f"Task {task.title} deleted", task
