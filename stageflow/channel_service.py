"""
Channel administration.

Creation, column editing, custom field management, membership and
archival. Authority checks come from the permission resolver; a refused
action is reported as ``(False, message, None)`` rather than raised.
"""

import dataclasses
import logging
import uuid
from typing import Any, List, Optional, Sequence, Tuple

from .defaults import default_columns
from .entity_store import EntityStore
from .field_values import CustomFieldType
from .permission_resolver import (
    can_create_channel,
    can_delete_channel,
    can_manage_channel,
)
from .pipeline_model import (
    ActingUser,
    Channel,
    Column,
    ColumnAssignment,
    CustomField,
    FieldPermissions,
    normalize_columns,
)

logger = logging.getLogger("channel_service")

ChannelResult = Tuple[bool, str, Optional[Channel]]

# Attributes update_custom_field may change
_FIELD_ATTRIBUTES = frozenset(f.name for f in dataclasses.fields(CustomField)) - {"id"}


def _slug(name: str) -> str:
    return "-".join(name.lower().split()) or uuid.uuid4().hex[:8]


class ChannelService:
    """Channel-level operations performed on behalf of an acting user."""

    def __init__(self, store: EntityStore):
        self._store = store

    def _managed(self, channel_id: str, actor: ActingUser) -> Tuple[Optional[Channel], str]:
        channel = self._store.require_channel(channel_id)
        if not can_manage_channel(channel, actor):
            return None, f"User {actor.user_id} cannot manage channel {channel.name}"
        return channel, ""

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def create_channel(
        self,
        actor: ActingUser,
        name: str,
        description: str = "",
        columns: Optional[Sequence[Column]] = None,
        manager_id: Optional[str] = None,
        members: Optional[List[str]] = None,
    ) -> ChannelResult:
        if not can_create_channel(actor):
            return False, f"Role {actor.role!r} cannot create channels", None
        if not name.strip():
            return False, "Channel name is required", None

        channel = self._store.add_channel(
            name=name.strip(),
            description=description,
            columns=normalize_columns(columns) if columns else default_columns(),
            manager_id=manager_id,
            members=list(members or []),
        )
        return True, f"Channel {channel.name} created", channel

    def set_archived(self, channel_id: str, actor: ActingUser, archived: bool) -> ChannelResult:
        channel, message = self._managed(channel_id, actor)
        if channel is None:
            return False, message, None
        updated = self._store.update_channel(channel_id, archived=archived)
        logger.info(f"Channel {channel_id} {'archived' if archived else 'unarchived'} by {actor.user_id}")
        return True, "Channel archived." if archived else "Channel unarchived.", updated

    def delete_channel(self, channel_id: str, actor: ActingUser) -> ChannelResult:
        """Hard delete. Owner only; the channel's active tasks go with it."""
        channel = self._store.require_channel(channel_id)
        if not can_delete_channel(actor):
            return False, "Only owners can delete channels", None
        with self._store.transaction():
            for task in self._store.tasks_for_channel(channel_id):
                self._store.delete_task(task.id)
            self._store.delete_channel(channel_id)
        logger.info(f"Channel {channel_id} permanently deleted by {actor.user_id}")
        return True, f"Channel {channel.name} deleted", channel

    # -------------------------------------------------------------------------
    # Columns
    # -------------------------------------------------------------------------

    def set_columns(self, channel_id: str, actor: ActingUser, columns: Sequence[Column]) -> ChannelResult:
        """
        Replace the pipeline with ``columns`` in the given sequence.

        Orders are renumbered from 0. Refused while a removed column still
        holds active tasks.
        """
        channel, message = self._managed(channel_id, actor)
        if channel is None:
            return False, message, None

        normalized = normalize_columns(columns)
        kept = {c.id for c in normalized}
        stranded = [t.id for t in self._store.tasks_for_channel(channel_id) if t.column_id not in kept]
        if stranded:
            return False, f"Move or finish {len(stranded)} task(s) before removing their column", None

        with self._store.transaction():
            assignments = [a for a in channel.column_assignments if a.column_id in kept]
            fields = [
                dataclasses.replace(f, required_in_columns=[c for c in f.required_in_columns if c in kept])
                for f in channel.custom_fields
            ]
            updated = self._store.update_channel(
                channel_id,
                columns=normalized,
                column_assignments=assignments,
                custom_fields=fields,
            )
        return True, "Columns updated", updated

    def add_column(self, channel_id: str, actor: ActingUser, name: str) -> ChannelResult:
        if not name.strip():
            return False, "Column name is required", None
        channel = self._store.require_channel(channel_id)
        existing = {c.id for c in channel.columns}
        column_id = _slug(name)
        while column_id in existing:
            column_id = f"{_slug(name)}-{uuid.uuid4().hex[:4]}"
        columns = channel.ordered_columns() + [Column(id=column_id, name=name.strip(), order=len(channel.columns))]
        return self.set_columns(channel_id, actor, columns)

    def rename_column(self, channel_id: str, actor: ActingUser, column_id: str, name: str) -> ChannelResult:
        channel, message = self._managed(channel_id, actor)
        if channel is None:
            return False, message, None
        if not name.strip():
            return False, "Column name is required", None
        if channel.get_column(column_id) is None:
            return False, f"Column {column_id} not found", None
        columns = [
            Column(id=c.id, name=name.strip() if c.id == column_id else c.name, order=c.order)
            for c in channel.columns
        ]
        updated = self._store.update_channel(channel_id, columns=columns)
        return True, "Column renamed.", updated

    # -------------------------------------------------------------------------
    # Custom fields
    # -------------------------------------------------------------------------

    def add_custom_field(
        self,
        channel_id: str,
        actor: ActingUser,
        name: str,
        field_type: CustomFieldType,
        required_in_columns: Optional[List[str]] = None,
        dropdown_options: Optional[List[str]] = None,
        show_on_card_front: bool = False,
        permissions: Optional[FieldPermissions] = None,
    ) -> Tuple[bool, str, Optional[CustomField]]:
        channel, message = self._managed(channel_id, actor)
        if channel is None:
            return False, message, None

        unknown = [c for c in required_in_columns or [] if channel.get_column(c) is None]
        if unknown:
            return False, f"Unknown columns: {unknown}", None

        custom_field = CustomField(
            id=f"field-{uuid.uuid4().hex[:10]}",
            name=name.strip(),
            type=CustomFieldType(field_type),
            order=len(channel.custom_fields),
            show_on_card_front=show_on_card_front,
            dropdown_options=list(dropdown_options or []),
            required_in_columns=list(required_in_columns or []),
            permissions=permissions,
        )
        self._store.update_channel(channel_id, custom_fields=channel.custom_fields + [custom_field])
        return True, f"Field {custom_field.name} added", custom_field

    def update_custom_field(
        self,
        channel_id: str,
        actor: ActingUser,
        field_id: str,
        **changes: Any,
    ) -> Tuple[bool, str, Optional[CustomField]]:
        channel, message = self._managed(channel_id, actor)
        if channel is None:
            return False, message, None
        current = channel.get_custom_field(field_id)
        if current is None:
            return False, f"Field {field_id} not found", None
        if "id" in changes:
            return False, "Field id cannot change", None
        unknown_keys = set(changes) - _FIELD_ATTRIBUTES
        if unknown_keys:
            return False, f"Unknown field attributes: {sorted(unknown_keys)}", None

        if "name" in changes:
            changes["name"] = str(changes["name"] or "").strip()
            if not changes["name"]:
                return False, "Field name is required", None
        if "type" in changes:
            try:
                changes["type"] = CustomFieldType(changes["type"])
            except ValueError:
                return False, f"Unknown field type: {changes['type']!r}", None
        if "required_in_columns" in changes:
            changes["required_in_columns"] = list(changes["required_in_columns"] or [])
            unknown = [c for c in changes["required_in_columns"] if channel.get_column(c) is None]
            if unknown:
                return False, f"Unknown columns: {unknown}", None
        if "dropdown_options" in changes:
            changes["dropdown_options"] = list(changes["dropdown_options"] or [])
        if isinstance(changes.get("permissions"), dict):
            changes["permissions"] = FieldPermissions.from_dict(changes["permissions"])

        updated_field = dataclasses.replace(current, **changes)
        fields = [updated_field if f.id == field_id else f for f in channel.custom_fields]
        self._store.update_channel(channel_id, custom_fields=fields)
        return True, f"Field {updated_field.name} updated", updated_field

    def remove_custom_field(self, channel_id: str, actor: ActingUser, field_id: str) -> ChannelResult:
        """Drop a field definition. Values already stored on tasks are left as they are."""
        channel, message = self._managed(channel_id, actor)
        if channel is None:
            return False, message, None
        remaining = [f for f in channel.sorted_custom_fields() if f.id != field_id]
        if len(remaining) == len(channel.custom_fields):
            return False, f"Field {field_id} not found", None
        reordered = [dataclasses.replace(f, order=i) for i, f in enumerate(remaining)]
        updated = self._store.update_channel(channel_id, custom_fields=reordered)
        return True, "Field removed", updated

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    def add_member(self, channel_id: str, actor: ActingUser, user_id: str) -> ChannelResult:
        channel, message = self._managed(channel_id, actor)
        if channel is None:
            return False, message, None
        if user_id in channel.members:
            return True, "Already a member", channel
        updated = self._store.update_channel(channel_id, members=channel.members + [user_id])
        return True, "Member added", updated

    def remove_member(self, channel_id: str, actor: ActingUser, user_id: str) -> ChannelResult:
        channel, message = self._managed(channel_id, actor)
        if channel is None:
            return False, message, None
        assignments = [
            dataclasses.replace(a, assigned_user_ids=[u for u in a.assigned_user_ids if u != user_id])
            for a in channel.column_assignments
        ]
        updated = self._store.update_channel(
            channel_id,
            members=[m for m in channel.members if m != user_id],
            column_assignments=assignments,
        )
        return True, "Member removed", updated

    def set_manager(self, channel_id: str, actor: ActingUser, manager_id: Optional[str]) -> ChannelResult:
        channel = self._store.require_channel(channel_id)
        if not actor.is_owner:
            return False, "Only owners can change a channel's manager", None
        members = list(channel.members)
        if manager_id and manager_id not in members:
            members.append(manager_id)
        updated = self._store.update_channel(channel_id, manager_id=manager_id, members=members)
        return True, "Manager updated", updated

    def set_column_assignment(
        self,
        channel_id: str,
        actor: ActingUser,
        column_id: str,
        user_ids: Optional[List[str]] = None,
        roles: Optional[List[str]] = None,
    ) -> ChannelResult:
        channel, message = self._managed(channel_id, actor)
        if channel is None:
            return False, message, None
        if channel.get_column(column_id) is None:
            return False, f"Column {column_id} not found", None

        assignment = ColumnAssignment(
            column_id=column_id,
            assigned_user_ids=list(user_ids or []),
            assigned_roles=list(roles or []),
        )
        assignments = [a for a in channel.column_assignments if a.column_id != column_id] + [assignment]
        updated = self._store.update_channel(channel_id, column_assignments=assignments)
        return True, "Column assignment updated", updated
