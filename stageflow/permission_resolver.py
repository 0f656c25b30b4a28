"""
Permission Resolver

Pure predicates deciding who may edit a custom field and who may act on a
channel. Nothing here mutates state or raises: missing data means "no
restriction", never an error.

Field edit policy (any rule grants access):
- the acting user is an owner
- the field has no permission record, or the record restricts nothing
- the user's role is in ``editable_by_roles``
- ``editable_by_column_responsibility`` is set and the user is responsible
  for the task's current column (by user id or by role)
- the user's id is in ``editable_by_users``
"""

from typing import List, Optional

from .pipeline_model import (
    CHANNEL_MANAGER_ROLE,
    OWNER_ROLE,
    ActingUser,
    Channel,
    CustomField,
    Task,
)


def is_responsible_for_column(channel: Optional[Channel], column_id: str, acting_user: ActingUser) -> bool:
    """True if the column assignment names the user or the user's role."""
    if channel is None:
        return False
    assignment = channel.assignment_for(column_id)
    if assignment is None:
        return False
    return (
        acting_user.user_id in assignment.assigned_user_ids
        or (bool(acting_user.role) and acting_user.role in assignment.assigned_roles)
    )


def can_edit(
    field: Optional[CustomField],
    task: Task,
    channel: Optional[Channel],
    acting_user: ActingUser,
) -> bool:
    """Decide whether ``acting_user`` may change ``field`` on ``task``."""
    if acting_user.role == OWNER_ROLE:
        return True
    if field is None:
        return True

    permissions = field.permissions
    if permissions is None or permissions.is_unrestricted():
        return True

    if acting_user.role and acting_user.role in permissions.editable_by_roles:
        return True

    if permissions.editable_by_column_responsibility and is_responsible_for_column(
        channel, task.column_id, acting_user
    ):
        return True

    return acting_user.user_id in permissions.editable_by_users


def editable_fields(task: Task, channel: Channel, acting_user: ActingUser) -> List[CustomField]:
    """Fields of ``channel`` the user may edit on ``task``, in field order."""
    return [f for f in channel.sorted_custom_fields() if can_edit(f, task, channel, acting_user)]


# -----------------------------------------------------------------------------
# Channel authority
# -----------------------------------------------------------------------------

def can_access_channel(channel: Optional[Channel], acting_user: ActingUser) -> bool:
    if channel is None:
        return False
    return acting_user.role == OWNER_ROLE or channel.has_member(acting_user.user_id)


def can_manage_channel(channel: Optional[Channel], acting_user: ActingUser) -> bool:
    """Owners manage every channel; a manager manages the channel they run."""
    if acting_user.role == OWNER_ROLE:
        return True
    return channel is not None and channel.manager_id == acting_user.user_id


def can_create_channel(acting_user: ActingUser) -> bool:
    return acting_user.role in (OWNER_ROLE, CHANNEL_MANAGER_ROLE)


def can_delete_channel(acting_user: ActingUser) -> bool:
    return acting_user.role == OWNER_ROLE
