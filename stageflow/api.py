"""
HTTP routes for the stage-transition core.

The acting user is supplied by the upstream authentication collaborator in
the ``X-User-Id`` and ``X-User-Role`` headers. The entity store and the
components built on it live on ``app.state`` and reach the routes through
dependencies.

Error mapping:
- InvalidReferenceError -> 404
- refused permission or authority -> 403
- refused channel or task edit (unknown column, blank name, ...) -> 400
- FieldValueError, ChannelConfigError -> 400
- missing required fields on advance -> 422 with the field names
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from .audit_trail import AuditTrail, FinalLinks
from .channel_service import ChannelService
from .entity_store import EntityStore
from .errors import ChannelConfigError, FieldValueError, InvalidReferenceError
from .field_values import CustomFieldType, format_datetime
from .permission_resolver import (
    can_access_channel,
    can_create_channel,
    can_delete_channel,
    can_edit,
    can_manage_channel,
)
from .pipeline_model import ActingUser, Channel, Column, FieldPermissions
from .task_service import TaskService
from .transition_engine import AdvanceOutcome, StageTransitionEngine
from .validation_engine import required_fields_checklist

logger = logging.getLogger("api")

router = APIRouter(prefix="/api", tags=["Stage Pipeline"])


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------
class CreateTaskRequest(BaseModel):
    title: str
    column_id: Optional[str] = None
    description: str = ""
    assigned_to: Optional[str] = None
    due_date: Optional[str] = None


class FieldValueRequest(BaseModel):
    value: Any = None


class AdvanceRequest(BaseModel):
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    script_url: Optional[str] = None
    audio_url: Optional[str] = None
    other_links: List[str] = Field(default_factory=list)


class UpdateTaskRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    assigned_to: Optional[str] = None
    due_date: Optional[str] = None
    notes: Optional[List[str]] = None
    links: Optional[List[str]] = None


class ColumnRequest(BaseModel):
    id: str
    name: str


class CreateChannelRequest(BaseModel):
    name: str
    description: str = ""
    columns: Optional[List[ColumnRequest]] = None
    manager_id: Optional[str] = None
    members: List[str] = Field(default_factory=list)


class UpdateChannelRequest(BaseModel):
    archived: bool


class ColumnsRequest(BaseModel):
    """Full pipeline in display order; orders are renumbered from 0."""
    columns: List[ColumnRequest]


class ColumnNameRequest(BaseModel):
    name: str


class PermissionsRequest(BaseModel):
    editable_by_roles: List[str] = Field(default_factory=list)
    editable_by_column_responsibility: bool = False
    editable_by_users: List[str] = Field(default_factory=list)

    def to_permissions(self) -> FieldPermissions:
        return FieldPermissions(
            editable_by_roles=list(self.editable_by_roles),
            editable_by_column_responsibility=self.editable_by_column_responsibility,
            editable_by_users=list(self.editable_by_users),
        )


class CustomFieldRequest(BaseModel):
    name: str
    type: CustomFieldType
    required_in_columns: List[str] = Field(default_factory=list)
    dropdown_options: List[str] = Field(default_factory=list)
    show_on_card_front: bool = False
    permissions: Optional[PermissionsRequest] = None


class UpdateCustomFieldRequest(BaseModel):
    name: Optional[str] = None
    type: Optional[CustomFieldType] = None
    order: Optional[int] = None
    required_in_columns: Optional[List[str]] = None
    dropdown_options: Optional[List[str]] = None
    show_on_card_front: Optional[bool] = None
    permissions: Optional[PermissionsRequest] = None


class MemberRequest(BaseModel):
    user_id: str


class ManagerRequest(BaseModel):
    manager_id: Optional[str] = None


class ColumnAssignmentRequest(BaseModel):
    user_ids: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------
def get_store(request: Request) -> EntityStore:
    return request.app.state.store


def get_engine(request: Request) -> StageTransitionEngine:
    return request.app.state.engine


def get_audit(request: Request) -> AuditTrail:
    return request.app.state.audit


def get_task_service(request: Request) -> TaskService:
    return request.app.state.task_service


def get_channel_service(request: Request) -> ChannelService:
    return request.app.state.channel_service


def get_acting_user(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> ActingUser:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return ActingUser(user_id=x_user_id, role=x_user_role or "")


def _not_found(e: InvalidReferenceError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


def _require_access(store: EntityStore, channel_id: str, actor: ActingUser):
    try:
        channel = store.require_channel(channel_id)
    except InvalidReferenceError as e:
        raise _not_found(e)
    if not can_access_channel(channel, actor):
        raise HTTPException(status_code=403, detail=f"No access to channel {channel_id}")
    return channel


def _require_task(store: EntityStore, task_id: str, actor: ActingUser):
    try:
        task = store.require_task(task_id)
    except InvalidReferenceError as e:
        raise _not_found(e)
    channel = _require_access(store, task.channel_id, actor)
    return task, channel


def _require_manager(store: EntityStore, channel_id: str, actor: ActingUser) -> Channel:
    try:
        channel = store.require_channel(channel_id)
    except InvalidReferenceError as e:
        raise _not_found(e)
    if not can_manage_channel(channel, actor):
        raise HTTPException(status_code=403, detail=f"User {actor.user_id} cannot manage channel {channel_id}")
    return channel


def _apply(operation: Callable[..., Tuple[bool, str, Any]], *args: Any, **kwargs: Any) -> Tuple[str, Any]:
    """Run a service operation; authority has already been checked by the route."""
    try:
        success, message, result = operation(*args, **kwargs)
    except InvalidReferenceError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not success:
        raise HTTPException(status_code=400, detail=message)
    return message, result


# -----------------------------------------------------------------------------
# Channels
# -----------------------------------------------------------------------------
@router.get("/channels")
async def list_channels(
    include_archived: bool = Query(False),
    store: EntityStore = Depends(get_store),
    actor: ActingUser = Depends(get_acting_user),
):
    """Channels the acting user can see."""
    channels = [
        c for c in store.channels
        if can_access_channel(c, actor) and (include_archived or not c.archived)
    ]
    return {"channels": [c.to_dict() for c in channels], "count": len(channels)}


@router.get("/channels/{channel_id}")
async def get_channel(
    channel_id: str,
    store: EntityStore = Depends(get_store),
    actor: ActingUser = Depends(get_acting_user),
):
    channel = _require_access(store, channel_id, actor)
    return {
        "channel": channel.to_dict(),
        "tasks": [t.to_dict() for t in store.tasks_for_channel(channel_id)],
    }


@router.post("/channels/{channel_id}/tasks", status_code=201)
async def create_task(
    channel_id: str,
    request: CreateTaskRequest,
    service: TaskService = Depends(get_task_service),
    actor: ActingUser = Depends(get_acting_user),
):
    try:
        success, message, task = service.create_task(
            actor,
            channel_id,
            request.title,
            column_id=request.column_id,
            description=request.description,
            assigned_to=request.assigned_to,
            due_date=request.due_date,
        )
    except InvalidReferenceError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not success:
        raise HTTPException(status_code=403, detail=message)
    return {"message": message, "task": task.to_dict()}


# -----------------------------------------------------------------------------
# Channel Administration
# -----------------------------------------------------------------------------
@router.post("/channels", status_code=201)
async def create_channel(
    request: CreateChannelRequest,
    service: ChannelService = Depends(get_channel_service),
    actor: ActingUser = Depends(get_acting_user),
):
    """Create a channel. Without columns it gets the default pipeline."""
    if not can_create_channel(actor):
        raise HTTPException(status_code=403, detail=f"Role {actor.role!r} cannot create channels")
    columns = None
    if request.columns:
        columns = [Column(id=c.id, name=c.name, order=i) for i, c in enumerate(request.columns)]
    message, channel = _apply(
        service.create_channel,
        actor,
        request.name,
        description=request.description,
        columns=columns,
        manager_id=request.manager_id,
        members=request.members,
    )
    return {"message": message, "channel": channel.to_dict()}


@router.patch("/channels/{channel_id}")
async def update_channel(
    channel_id: str,
    request: UpdateChannelRequest,
    store: EntityStore = Depends(get_store),
    service: ChannelService = Depends(get_channel_service),
    actor: ActingUser = Depends(get_acting_user),
):
    _require_manager(store, channel_id, actor)
    message, channel = _apply(service.set_archived, channel_id, actor, request.archived)
    return {"message": message, "channel": channel.to_dict()}


@router.delete("/channels/{channel_id}")
async def delete_channel(
    channel_id: str,
    store: EntityStore = Depends(get_store),
    service: ChannelService = Depends(get_channel_service),
    actor: ActingUser = Depends(get_acting_user),
):
    """Hard delete a channel and its active tasks. Owners only."""
    if store.get_channel(channel_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown channel: {channel_id!r}")
    if not can_delete_channel(actor):
        raise HTTPException(status_code=403, detail="Only owners can delete channels")
    message, _ = _apply(service.delete_channel, channel_id, actor)
    return {"message": message, "channel_id": channel_id}


@router.put("/channels/{channel_id}/columns")
async def set_columns(
    channel_id: str,
    request: ColumnsRequest,
    store: EntityStore = Depends(get_store),
    service: ChannelService = Depends(get_channel_service),
    actor: ActingUser = Depends(get_acting_user),
):
    _require_manager(store, channel_id, actor)
    columns = [Column(id=c.id, name=c.name, order=i) for i, c in enumerate(request.columns)]
    message, channel = _apply(service.set_columns, channel_id, actor, columns)
    return {"message": message, "channel": channel.to_dict()}


@router.post("/channels/{channel_id}/columns", status_code=201)
async def add_column(
    channel_id: str,
    request: ColumnNameRequest,
    store: EntityStore = Depends(get_store),
    service: ChannelService = Depends(get_channel_service),
    actor: ActingUser = Depends(get_acting_user),
):
    _require_manager(store, channel_id, actor)
    message, channel = _apply(service.add_column, channel_id, actor, request.name)
    return {"message": message, "channel": channel.to_dict()}


@router.patch("/channels/{channel_id}/columns/{column_id}")
async def rename_column(
    channel_id: str,
    column_id: str,
    request: ColumnNameRequest,
    store: EntityStore = Depends(get_store),
    service: ChannelService = Depends(get_channel_service),
    actor: ActingUser = Depends(get_acting_user),
):
    _require_manager(store, channel_id, actor)
    message, channel = _apply(service.rename_column, channel_id, actor, column_id, request.name)
    return {"message": message, "channel": channel.to_dict()}


@router.put("/channels/{channel_id}/columns/{column_id}/assignment")
async def set_column_assignment(
    channel_id: str,
    column_id: str,
    request: ColumnAssignmentRequest,
    store: EntityStore = Depends(get_store),
    service: ChannelService = Depends(get_channel_service),
    actor: ActingUser = Depends(get_acting_user),
):
    _require_manager(store, channel_id, actor)
    message, channel = _apply(
        service.set_column_assignment,
        channel_id,
        actor,
        column_id,
        user_ids=request.user_ids,
        roles=request.roles,
    )
    return {"message": message, "channel": channel.to_dict()}


@router.post("/channels/{channel_id}/fields", status_code=201)
async def add_custom_field(
    channel_id: str,
    request: CustomFieldRequest,
    store: EntityStore = Depends(get_store),
    service: ChannelService = Depends(get_channel_service),
    actor: ActingUser = Depends(get_acting_user),
):
    _require_manager(store, channel_id, actor)
    message, custom_field = _apply(
        service.add_custom_field,
        channel_id,
        actor,
        request.name,
        request.type,
        required_in_columns=request.required_in_columns,
        dropdown_options=request.dropdown_options,
        show_on_card_front=request.show_on_card_front,
        permissions=request.permissions.to_permissions() if request.permissions else None,
    )
    return {"message": message, "field": custom_field.to_dict()}


@router.patch("/channels/{channel_id}/fields/{field_id}")
async def update_custom_field(
    channel_id: str,
    field_id: str,
    request: UpdateCustomFieldRequest,
    store: EntityStore = Depends(get_store),
    service: ChannelService = Depends(get_channel_service),
    actor: ActingUser = Depends(get_acting_user),
):
    _require_manager(store, channel_id, actor)
    changes = request.model_dump(exclude_unset=True)
    if "permissions" in changes:
        changes["permissions"] = request.permissions.to_permissions() if request.permissions else None
    message, custom_field = _apply(service.update_custom_field, channel_id, actor, field_id, **changes)
    return {"message": message, "field": custom_field.to_dict()}


@router.delete("/channels/{channel_id}/fields/{field_id}")
async def remove_custom_field(
    channel_id: str,
    field_id: str,
    store: EntityStore = Depends(get_store),
    service: ChannelService = Depends(get_channel_service),
    actor: ActingUser = Depends(get_acting_user),
):
    _require_manager(store, channel_id, actor)
    message, channel = _apply(service.remove_custom_field, channel_id, actor, field_id)
    return {"message": message, "channel": channel.to_dict()}


@router.post("/channels/{channel_id}/members")
async def add_member(
    channel_id: str,
    request: MemberRequest,
    store: EntityStore = Depends(get_store),
    service: ChannelService = Depends(get_channel_service),
    actor: ActingUser = Depends(get_acting_user),
):
    _require_manager(store, channel_id, actor)
    message, channel = _apply(service.add_member, channel_id, actor, request.user_id)
    return {"message": message, "channel": channel.to_dict()}


@router.delete("/channels/{channel_id}/members/{user_id}")
async def remove_member(
    channel_id: str,
    user_id: str,
    store: EntityStore = Depends(get_store),
    service: ChannelService = Depends(get_channel_service),
    actor: ActingUser = Depends(get_acting_user),
):
    _require_manager(store, channel_id, actor)
    message, channel = _apply(service.remove_member, channel_id, actor, user_id)
    return {"message": message, "channel": channel.to_dict()}


@router.put("/channels/{channel_id}/manager")
async def set_manager(
    channel_id: str,
    request: ManagerRequest,
    store: EntityStore = Depends(get_store),
    service: ChannelService = Depends(get_channel_service),
    actor: ActingUser = Depends(get_acting_user),
):
    if store.get_channel(channel_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown channel: {channel_id!r}")
    if not actor.is_owner:
        raise HTTPException(status_code=403, detail="Only owners can change a channel's manager")
    message, channel = _apply(service.set_manager, channel_id, actor, request.manager_id)
    return {"message": message, "channel": channel.to_dict()}


# -----------------------------------------------------------------------------
# Tasks
# -----------------------------------------------------------------------------
@router.get("/tasks/{task_id}")
async def get_task(
    task_id: str,
    store: EntityStore = Depends(get_store),
    actor: ActingUser = Depends(get_acting_user),
):
    task, _ = _require_task(store, task_id, actor)
    return {"task": task.to_dict()}


@router.patch("/tasks/{task_id}")
async def update_task(
    task_id: str,
    request: UpdateTaskRequest,
    store: EntityStore = Depends(get_store),
    service: TaskService = Depends(get_task_service),
    actor: ActingUser = Depends(get_acting_user),
):
    """Edit task details. Columns change only through advance."""
    _require_task(store, task_id, actor)
    message, task = _apply(service.update_details, task_id, actor, **request.model_dump(exclude_unset=True))
    return {"message": message, "task": task.to_dict()}


@router.delete("/tasks/{task_id}")
async def delete_task(
    task_id: str,
    store: EntityStore = Depends(get_store),
    service: TaskService = Depends(get_task_service),
    actor: ActingUser = Depends(get_acting_user),
):
    """Discard an active task without archiving it. Channel managers only."""
    _, channel = _require_task(store, task_id, actor)
    if not can_manage_channel(channel, actor):
        raise HTTPException(status_code=403, detail="Only the channel manager can delete tasks")
    message, _ = _apply(service.delete_task, task_id, actor)
    return {"message": message, "task_id": task_id}


@router.get("/tasks/{task_id}/missing-fields")
async def get_missing_fields(
    task_id: str,
    store: EntityStore = Depends(get_store),
    actor: ActingUser = Depends(get_acting_user),
):
    """Checklist of the fields required before the task can leave its column."""
    task, channel = _require_task(store, task_id, actor)
    checklist = required_fields_checklist(task, channel)
    return {
        "task_id": task.id,
        "column_id": task.column_id,
        "is_terminal": channel.is_terminal_column(task.column_id),
        "fields": [
            {"id": f.id, "name": f.name, "type": f.type.value, "complete": done}
            for f, done in checklist
        ],
        "missing": [f.name for f, done in checklist if not done],
    }


@router.get("/tasks/{task_id}/fields/{field_id}/can-edit")
async def get_can_edit(
    task_id: str,
    field_id: str,
    store: EntityStore = Depends(get_store),
    actor: ActingUser = Depends(get_acting_user),
):
    task, channel = _require_task(store, task_id, actor)
    custom_field = channel.get_custom_field(field_id)
    if custom_field is None:
        raise HTTPException(status_code=404, detail=f"Unknown custom field: {field_id!r}")
    return {"field_id": field_id, "can_edit": can_edit(custom_field, task, channel, actor)}


@router.put("/tasks/{task_id}/fields/{field_id}")
async def set_field_value(
    task_id: str,
    field_id: str,
    request: FieldValueRequest,
    store: EntityStore = Depends(get_store),
    service: TaskService = Depends(get_task_service),
    actor: ActingUser = Depends(get_acting_user),
):
    _require_task(store, task_id, actor)
    try:
        success, message, task = service.set_field_value(task_id, field_id, request.value, actor)
    except InvalidReferenceError as e:
        raise _not_found(e)
    except FieldValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not success:
        raise HTTPException(status_code=403, detail=message)
    return {"message": message, "task": task.to_dict()}


@router.post("/tasks/{task_id}/advance")
async def advance_task(
    task_id: str,
    request: Optional[AdvanceRequest] = None,
    store: EntityStore = Depends(get_store),
    engine: StageTransitionEngine = Depends(get_engine),
    actor: ActingUser = Depends(get_acting_user),
):
    """
    Move the task to its next column, or finalize it from the last one.

    Returns 422 listing the blocking field names when mandatory fields of
    the current column are still blank.
    """
    _require_task(store, task_id, actor)
    links = None
    if request is not None:
        links = FinalLinks(
            video_url=request.video_url,
            thumbnail_url=request.thumbnail_url,
            script_url=request.script_url,
            audio_url=request.audio_url,
            other_links=list(request.other_links),
        )

    try:
        result = engine.advance(task_id, actor.user_id, final_links=links)
    except InvalidReferenceError as e:
        raise _not_found(e)
    except ChannelConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if result.outcome == AdvanceOutcome.MISSING_REQUIRED_FIELDS:
        raise HTTPException(
            status_code=422,
            detail={"message": result.message, "missing_fields": result.missing_field_names},
        )
    return result.to_dict()


@router.get("/tasks/{task_id}/history")
async def get_task_history(
    task_id: str,
    store: EntityStore = Depends(get_store),
    audit: AuditTrail = Depends(get_audit),
    actor: ActingUser = Depends(get_acting_user),
):
    """Stage events of a task. Works for finalized tasks too."""
    events = audit.events_for_task(task_id)
    task = store.get_task(task_id)
    if task is None and not events:
        raise HTTPException(status_code=404, detail=f"Unknown task: {task_id!r}")

    channel_id = task.channel_id if task else events[0].channel_id
    channel = store.get_channel(channel_id)
    # history of a deleted channel stays visible to owners only
    allowed = can_access_channel(channel, actor) if channel is not None else actor.is_owner
    if not allowed:
        raise HTTPException(status_code=403, detail=f"No access to channel {channel_id}")

    return {
        "task_id": task_id,
        "path": audit.stage_history(task_id),
        "events": [e.to_dict() for e in events],
    }


# -----------------------------------------------------------------------------
# Audit
# -----------------------------------------------------------------------------
@router.get("/completed-tasks")
async def list_completed_tasks(
    channel_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    store: EntityStore = Depends(get_store),
    actor: ActingUser = Depends(get_acting_user),
):
    records = [
        r for r in store.completed_tasks
        if (channel_id is None or r.channel_id == channel_id)
        and (actor.is_owner or can_access_channel(store.get_channel(r.channel_id), actor))
    ]
    records.sort(key=lambda r: r.completed_at, reverse=True)
    return {
        "completed_tasks": [r.to_dict() for r in records[:limit]],
        "count": len(records),
    }


@router.get("/stage-events/summary")
async def get_stage_event_summary(
    channel_id: Optional[str] = Query(None),
    since_hours: int = Query(24, ge=1, le=24 * 365),
    audit: AuditTrail = Depends(get_audit),
    actor: ActingUser = Depends(get_acting_user),
) -> Dict[str, Any]:
    summary = audit.get_summary(channel_id=channel_id, since_hours=since_hours)
    logger.debug(f"Summary requested by {actor.user_id}: {summary['stages_completed']} stages")
    return summary


@router.get("/health")
async def health_check(store: EntityStore = Depends(get_store)):
    events = store.stage_events
    return {
        "status": "healthy",
        "channels": len(store.channels),
        "active_tasks": len(store.tasks),
        "completed_tasks": len(store.completed_tasks),
        "last_stage_event_at": format_datetime(events[-1].occurred_at) if events else None,
    }
