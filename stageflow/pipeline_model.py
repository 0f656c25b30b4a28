"""
Pipeline Data Model

Channels, their ordered columns and custom fields, the active tasks moving
through them, and the two write-once records produced by stage transitions:
StageEvent (audit) and CompletedTask (archival snapshot).

Every entity serializes through explicit ``to_dict`` / ``from_dict`` methods.
Timestamp fields are parsed per field, never by pattern-matching arbitrary
strings.

Column invariants:
- ``order`` values are unique within a channel and run 0..n-1 without gaps
- the next column of C is the column with ``order == C.order + 1``
- a column with no next column is terminal
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .errors import ChannelConfigError
from .field_values import (
    CustomFieldType,
    FieldValue,
    format_datetime,
    parse_datetime,
    utc_now,
)

# -----------------------------------------------------------------------------
# Roles
# -----------------------------------------------------------------------------
OWNER_ROLE = "owner"
CHANNEL_MANAGER_ROLE = "channel_manager"


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class StageEventType(str, Enum):
    """Kind of stage transition recorded in the audit trail."""
    STAGE_COMPLETED = "stage_completed"
    FINALIZED = "finalized"


class OTType(str, Enum):
    HALF_DAY = "half_day"
    FULL_DAY = "full_day"


# -----------------------------------------------------------------------------
# Acting user
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ActingUser:
    """Identity handed to the core by the authentication collaborator."""
    user_id: str
    role: str

    @property
    def is_owner(self) -> bool:
        return self.role == OWNER_ROLE


# -----------------------------------------------------------------------------
# Channel structure
# -----------------------------------------------------------------------------
@dataclass
class Column:
    """One stage of a channel's pipeline."""
    id: str
    name: str
    order: int

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "order": self.order}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Column":
        return cls(id=data["id"], name=data["name"], order=int(data["order"]))


@dataclass
class FieldPermissions:
    """Who may edit a restricted custom field."""
    editable_by_roles: List[str] = field(default_factory=list)
    editable_by_column_responsibility: bool = False
    editable_by_users: List[str] = field(default_factory=list)

    def is_unrestricted(self) -> bool:
        return (
            not self.editable_by_roles
            and not self.editable_by_column_responsibility
            and not self.editable_by_users
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "editableByRoles": list(self.editable_by_roles),
            "editableByColumnResponsibility": self.editable_by_column_responsibility,
            "editableByUsers": list(self.editable_by_users),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldPermissions":
        return cls(
            editable_by_roles=list(data.get("editableByRoles") or []),
            editable_by_column_responsibility=bool(data.get("editableByColumnResponsibility", False)),
            editable_by_users=list(data.get("editableByUsers") or []),
        )


@dataclass
class CustomField:
    """
    A typed data slot attached to every task of a channel.

    ``required_in_columns`` lists the columns a task may not leave while this
    field is blank.
    """
    id: str
    name: str
    type: CustomFieldType
    order: int = 0
    show_on_card_front: bool = False
    dropdown_options: List[str] = field(default_factory=list)
    required_in_columns: List[str] = field(default_factory=list)
    permissions: Optional[FieldPermissions] = None

    def is_required_in(self, column_id: str) -> bool:
        return column_id in self.required_in_columns

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "order": self.order,
            "showOnCardFront": self.show_on_card_front,
            "dropdownOptions": list(self.dropdown_options),
            "requiredInColumns": list(self.required_in_columns),
            "permissions": self.permissions.to_dict() if self.permissions else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomField":
        permissions = data.get("permissions")
        return cls(
            id=data["id"],
            name=data["name"],
            type=CustomFieldType(data["type"]),
            order=int(data.get("order", 0)),
            show_on_card_front=bool(data.get("showOnCardFront", False)),
            dropdown_options=list(data.get("dropdownOptions") or []),
            required_in_columns=list(data.get("requiredInColumns") or []),
            permissions=FieldPermissions.from_dict(permissions) if permissions is not None else None,
        )


@dataclass
class ColumnAssignment:
    """Users and roles responsible for the work in one column."""
    column_id: str
    assigned_user_ids: List[str] = field(default_factory=list)
    assigned_roles: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "columnId": self.column_id,
            "assignedUserIds": list(self.assigned_user_ids),
            "assignedRoles": list(self.assigned_roles),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ColumnAssignment":
        return cls(
            column_id=data["columnId"],
            assigned_user_ids=list(data.get("assignedUserIds") or []),
            assigned_roles=list(data.get("assignedRoles") or []),
        )


def validate_columns(columns: Sequence[Column]) -> None:
    """Raise ChannelConfigError unless ids are unique and orders run 0..n-1."""
    ids = [c.id for c in columns]
    if len(set(ids)) != len(ids):
        raise ChannelConfigError(f"Duplicate column ids: {ids}")
    orders = sorted(c.order for c in columns)
    if orders != list(range(len(columns))):
        raise ChannelConfigError(f"Column orders must be unique and contiguous from 0, got {orders}")


def normalize_columns(columns: Sequence[Column]) -> List[Column]:
    """Return the columns in their current sequence, renumbered 0..n-1."""
    return [Column(id=c.id, name=c.name, order=i) for i, c in enumerate(columns)]


@dataclass
class Channel:
    """A content channel and its stage pipeline."""
    id: str
    name: str
    description: str = ""
    columns: List[Column] = field(default_factory=list)
    custom_fields: List[CustomField] = field(default_factory=list)
    members: List[str] = field(default_factory=list)
    manager_id: Optional[str] = None
    column_assignments: List[ColumnAssignment] = field(default_factory=list)
    archived: bool = False
    created_at: datetime = field(default_factory=utc_now)
    youtube_channel_id: Optional[str] = None

    # -------------------------------------------------------------------------
    # Pipeline navigation
    # -------------------------------------------------------------------------

    def ordered_columns(self) -> List[Column]:
        return sorted(self.columns, key=lambda c: c.order)

    def get_column(self, column_id: str) -> Optional[Column]:
        for column in self.columns:
            if column.id == column_id:
                return column
        return None

    def first_column(self) -> Optional[Column]:
        ordered = self.ordered_columns()
        return ordered[0] if ordered else None

    def next_column(self, column_id: str) -> Optional[Column]:
        current = self.get_column(column_id)
        if current is None:
            return None
        candidates = [c for c in self.columns if c.order == current.order + 1]
        return candidates[0] if candidates else None

    def is_terminal_column(self, column_id: str) -> bool:
        return self.get_column(column_id) is not None and self.next_column(column_id) is None

    # -------------------------------------------------------------------------
    # Fields and assignments
    # -------------------------------------------------------------------------

    def get_custom_field(self, field_id: str) -> Optional[CustomField]:
        for custom_field in self.custom_fields:
            if custom_field.id == field_id:
                return custom_field
        return None

    def sorted_custom_fields(self) -> List[CustomField]:
        return sorted(self.custom_fields, key=lambda f: f.order)

    def assignment_for(self, column_id: str) -> Optional[ColumnAssignment]:
        for assignment in self.column_assignments:
            if assignment.column_id == column_id:
                return assignment
        return None

    def has_member(self, user_id: str) -> bool:
        return user_id in self.members or user_id == self.manager_id

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "columns": [c.to_dict() for c in self.columns],
            "customFields": [f.to_dict() for f in self.custom_fields],
            "members": list(self.members),
            "managerId": self.manager_id,
            "columnAssignments": [a.to_dict() for a in self.column_assignments],
            "archived": self.archived,
            "createdAt": format_datetime(self.created_at),
            "youtubeChannelId": self.youtube_channel_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Channel":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description") or "",
            columns=[Column.from_dict(c) for c in data.get("columns") or []],
            custom_fields=[CustomField.from_dict(f) for f in data.get("customFields") or []],
            members=list(data.get("members") or []),
            manager_id=data.get("managerId"),
            column_assignments=[ColumnAssignment.from_dict(a) for a in data.get("columnAssignments") or []],
            archived=bool(data.get("archived", False)),
            created_at=parse_datetime(data.get("createdAt")) or utc_now(),
            youtube_channel_id=data.get("youtubeChannelId"),
        )


# -----------------------------------------------------------------------------
# Tasks
# -----------------------------------------------------------------------------
@dataclass
class Task:
    """An active unit of work sitting in one column of a channel."""
    id: str
    title: str
    channel_id: str
    column_id: str
    description: str = ""
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    custom_field_values: Dict[str, FieldValue] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)
    links: List[str] = field(default_factory=list)
    completed: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def get_value(self, field_id: str) -> Any:
        stored = self.custom_field_values.get(field_id)
        return stored.value if stored is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "channelId": self.channel_id,
            "columnId": self.column_id,
            "assignedTo": self.assigned_to,
            "dueDate": format_datetime(self.due_date),
            "customFieldValues": {k: v.to_dict() for k, v in self.custom_field_values.items()},
            "notes": list(self.notes),
            "links": list(self.links),
            "completed": self.completed,
            "createdAt": format_datetime(self.created_at),
            "updatedAt": format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=data["id"],
            title=data["title"],
            channel_id=data["channelId"],
            column_id=data["columnId"],
            description=data.get("description") or "",
            assigned_to=data.get("assignedTo"),
            due_date=parse_datetime(data.get("dueDate")),
            custom_field_values={
                k: FieldValue.from_dict(v) for k, v in (data.get("customFieldValues") or {}).items()
            },
            notes=list(data.get("notes") or []),
            links=list(data.get("links") or []),
            completed=bool(data.get("completed", False)),
            created_at=parse_datetime(data.get("createdAt")) or utc_now(),
            updated_at=parse_datetime(data.get("updatedAt")) or utc_now(),
        )


# -----------------------------------------------------------------------------
# Write-once records
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class StageEvent:
    """
    Immutable record of one stage transition.

    For ``finalized`` events ``from_column_id == to_column_id``.
    """
    id: str
    task_id: str
    channel_id: str
    actor_user_id: str
    from_column_id: str
    to_column_id: str
    event_type: StageEventType
    occurred_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "channelId": self.channel_id,
            "actorUserId": self.actor_user_id,
            "fromColumnId": self.from_column_id,
            "toColumnId": self.to_column_id,
            "eventType": self.event_type.value,
            "occurredAt": format_datetime(self.occurred_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageEvent":
        return cls(
            id=data["id"],
            task_id=data["taskId"],
            channel_id=data["channelId"],
            actor_user_id=data.get("actorUserId") or "",
            from_column_id=data["fromColumnId"],
            to_column_id=data["toColumnId"],
            event_type=StageEventType(data["eventType"]),
            occurred_at=parse_datetime(data["occurredAt"]),
        )


@dataclass(frozen=True)
class CompletedTask:
    """
    Archival snapshot of a task taken at finalization.

    Channel and column names are copied so later renames leave history intact.
    """
    id: str
    task_id: str
    title: str
    channel_id: str
    channel_name: str
    column_id: str
    column_name: str
    completed_at: datetime
    completed_by: str
    description: str = ""
    assigned_to: Optional[str] = None
    assignees: List[str] = field(default_factory=list)
    due_date: Optional[datetime] = None
    created_by: Optional[str] = None
    task_created_at: Optional[datetime] = None
    custom_field_values: Dict[str, FieldValue] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)
    links: List[str] = field(default_factory=list)
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    script_url: Optional[str] = None
    audio_url: Optional[str] = None
    other_links: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "title": self.title,
            "description": self.description,
            "channelId": self.channel_id,
            "channelName": self.channel_name,
            "columnId": self.column_id,
            "columnName": self.column_name,
            "assignedTo": self.assigned_to,
            "assignees": list(self.assignees),
            "dueDate": format_datetime(self.due_date),
            "completedAt": format_datetime(self.completed_at),
            "completedBy": self.completed_by,
            "createdBy": self.created_by,
            "taskCreatedAt": format_datetime(self.task_created_at),
            "customFieldValues": {k: v.to_dict() for k, v in self.custom_field_values.items()},
            "notes": list(self.notes),
            "links": list(self.links),
            "videoUrl": self.video_url,
            "thumbnailUrl": self.thumbnail_url,
            "scriptUrl": self.script_url,
            "audioUrl": self.audio_url,
            "otherLinks": list(self.other_links),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompletedTask":
        return cls(
            id=data["id"],
            task_id=data["taskId"],
            title=data["title"],
            description=data.get("description") or "",
            channel_id=data["channelId"],
            channel_name=data.get("channelName") or "",
            column_id=data["columnId"],
            column_name=data.get("columnName") or "",
            assigned_to=data.get("assignedTo"),
            assignees=list(data.get("assignees") or []),
            due_date=parse_datetime(data.get("dueDate")),
            completed_at=parse_datetime(data["completedAt"]),
            completed_by=data.get("completedBy") or "",
            created_by=data.get("createdBy"),
            task_created_at=parse_datetime(data.get("taskCreatedAt")),
            custom_field_values={
                k: FieldValue.from_dict(v) for k, v in (data.get("customFieldValues") or {}).items()
            },
            notes=list(data.get("notes") or []),
            links=list(data.get("links") or []),
            video_url=data.get("videoUrl"),
            thumbnail_url=data.get("thumbnailUrl"),
            script_url=data.get("scriptUrl"),
            audio_url=data.get("audioUrl"),
            other_links=list(data.get("otherLinks") or []),
        )


# -----------------------------------------------------------------------------
# People and settings
# -----------------------------------------------------------------------------
@dataclass
class User:
    id: str
    name: str
    email: str = ""
    employee_code: str = ""
    role: str = ""
    active: bool = True
    joined_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "employeeCode": self.employee_code,
            "role": self.role,
            "active": self.active,
            "joinedDate": format_datetime(self.joined_date),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            email=data.get("email") or "",
            employee_code=data.get("employeeCode") or "",
            role=data.get("role") or "",
            active=bool(data.get("active", True)),
            joined_date=parse_datetime(data.get("joinedDate")),
        )


@dataclass
class Role:
    id: str
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Role":
        return cls(id=data["id"], name=data["name"])


@dataclass
class OTEntry:
    """Overtime log entry. Stored here; reporting lives elsewhere."""
    id: str
    user_id: str
    channel_id: str
    date: datetime
    type: OTType
    amount: float
    logged_by: str
    notes: str = ""
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "channelId": self.channel_id,
            "date": format_datetime(self.date),
            "type": self.type.value,
            "amount": self.amount,
            "notes": self.notes,
            "loggedBy": self.logged_by,
            "createdAt": format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OTEntry":
        return cls(
            id=data["id"],
            user_id=data["userId"],
            channel_id=data["channelId"],
            date=parse_datetime(data["date"]),
            type=OTType(data["type"]),
            amount=data.get("amount", 0),
            notes=data.get("notes") or "",
            logged_by=data.get("loggedBy") or "",
            created_at=parse_datetime(data.get("createdAt")) or utc_now(),
        )


@dataclass
class AppSettings:
    bookmarks_enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"bookmarksEnabled": self.bookmarks_enabled}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppSettings":
        return cls(bookmarks_enabled=bool(data.get("bookmarksEnabled", True)))
