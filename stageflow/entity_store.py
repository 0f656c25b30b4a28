"""
Entity Store

Owns the canonical in-memory collections and their write-through
persistence to a key-value boundary.

Guarantees:
- every mutation persists the full collection set before returning
- inside ``transaction()`` persistence is deferred to the end of the
  outermost block; an exception restores the snapshot taken at entry
- every slot is serialized before the commit, so a value that cannot be
  written rolls the mutation back instead of leaving memory ahead of storage
- custom field values are stored tagged; raw values are coerced against the
  channel's field definitions on the way in
- ids are generated here and are unique within the store
- ``task.column_id`` always names a column of ``task.channel_id``
- stage events and completed tasks are append-only: no update or delete API

Loading never fails: a slot that is empty or cannot be parsed falls back to
the default dataset and a warning is logged.
"""

import copy
import dataclasses
import json
import logging
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from . import config
from .defaults import (
    APP_SETTINGS,
    CHANNELS,
    COMPLETED_TASKS,
    ENTITY_TYPES,
    LIST_COLLECTIONS,
    OT_ENTRIES,
    ROLES,
    STAGE_EVENTS,
    TASKS,
    USERS,
    build_fallback_collections,
    empty_collections,
)
from .errors import ChannelConfigError, FieldValueError, InvalidReferenceError
from .field_values import FieldValue, coerce_field_value, retag_legacy_value, utc_now
from .pipeline_model import (
    AppSettings,
    Channel,
    CompletedTask,
    OTEntry,
    Role,
    StageEvent,
    StageEventType,
    Task,
    User,
    validate_columns,
)
from .storage_port import KeyValuePort

logger = logging.getLogger("entity_store")

# Fields callers may never set through add/update
_IMMUTABLE_FIELDS = frozenset({"id", "created_at"})

ID_PREFIXES = {
    CHANNELS: "channel",
    TASKS: "task",
    USERS: "user",
    ROLES: "role",
    OT_ENTRIES: "ot",
    COMPLETED_TASKS: "completed",
    STAGE_EVENTS: "stage",
}


def _field_names(entity_type: type) -> frozenset:
    return frozenset(f.name for f in dataclasses.fields(entity_type))


def _check_fields(entity_type: type, values: Dict[str, Any], protected: frozenset = _IMMUTABLE_FIELDS) -> None:
    unknown = set(values) - _field_names(entity_type)
    if unknown:
        raise ValueError(f"Unknown {entity_type.__name__} fields: {sorted(unknown)}")
    blocked = set(values) & protected
    if blocked:
        raise ValueError(f"{entity_type.__name__} fields cannot be set directly: {sorted(blocked)}")


class EntityStore:
    """
    In-memory collections with write-through persistence.

    One store instance is the single authoritative state of a process; pass
    it explicitly to every component that needs it.
    """

    def __init__(
        self,
        port: KeyValuePort,
        seed_defaults: bool = True,
        seed_file: Optional[Path] = None,
        key_prefix: Optional[str] = None,
    ):
        """
        Initialize the store and load every collection from ``port``.

        Args:
            port: Key-value persistence boundary
            seed_defaults: Fall back to the built-in dataset for empty slots
                (False falls back to empty collections)
            seed_file: Optional YAML file overriding the built-in dataset
            key_prefix: Slot name prefix (defaults to STAGEFLOW_KEY_PREFIX)
        """
        self._port = port
        self._seed_defaults = seed_defaults
        self._seed_file = seed_file if seed_file is not None else config.SEED_FILE
        self._key_prefix = key_prefix
        self._lock = threading.RLock()
        self._depth = 0
        self._dirty = False
        self._collections: Dict[str, Any] = empty_collections()
        self.reload()

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def _key(self, collection: str) -> str:
        return config.storage_key(collection, self._key_prefix)

    def _fallback(self) -> Dict[str, Any]:
        if self._seed_defaults:
            return build_fallback_collections(self._seed_file)
        return empty_collections()

    def reload(self) -> None:
        """Discard in-memory state and re-read every slot."""
        with self._lock:
            fallback = self._fallback()
            loaded: Dict[str, Any] = {}
            for name in LIST_COLLECTIONS + (APP_SETTINGS,):
                loaded[name] = self._load_collection(name, fallback[name])
            self._collections = loaded
            self._retag_custom_values()
            logger.info(
                f"Loaded {len(loaded[CHANNELS])} channels, {len(loaded[TASKS])} tasks, "
                f"{len(loaded[STAGE_EVENTS])} stage events"
            )

    def _load_collection(self, name: str, fallback: Any) -> Any:
        key = self._key(name)
        payload = self._port.get(key)
        if payload is None:
            return fallback
        try:
            data = json.loads(payload)
            if name == APP_SETTINGS:
                if not isinstance(data, dict):
                    raise ValueError("expected a JSON object")
                return AppSettings.from_dict(data)
            if not isinstance(data, list):
                raise ValueError("expected a JSON array")
            entity_type = ENTITY_TYPES[name]
            return [entity_type.from_dict(item) for item in data]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Could not load {key}, using default data: {e}")
            return fallback

    def _retag_custom_values(self) -> None:
        """Re-type untagged custom field values against their channel's fields."""
        channels = {c.id: c for c in self._collections[CHANNELS]}
        # completed snapshots are frozen, so their value dicts are rebuilt
        for name in (TASKS, COMPLETED_TASKS):
            records = self._collections[name]
            for i, record in enumerate(records):
                channel = channels.get(record.channel_id)
                if channel is None or not record.custom_field_values:
                    continue
                values = {
                    field_id: self._retag(channel, field_id, stored)
                    for field_id, stored in record.custom_field_values.items()
                }
                records[i] = dataclasses.replace(record, custom_field_values=values)

    @staticmethod
    def _retag(channel: Channel, field_id: str, stored: FieldValue) -> FieldValue:
        custom_field = channel.get_custom_field(field_id)
        return stored if custom_field is None else retag_legacy_value(custom_field, stored)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _serialize(self, name: str) -> str:
        value = self._collections[name]
        if name == APP_SETTINGS:
            return json.dumps(value.to_dict())
        return json.dumps([item.to_dict() for item in value])

    def _serialize_all(self) -> Dict[str, str]:
        """
        Render every collection for its slot.

        Raises whatever the entities raise when they hold a value that has no
        JSON form; callers roll back on that.
        """
        try:
            return {self._key(name): self._serialize(name) for name in LIST_COLLECTIONS + (APP_SETTINGS,)}
        except Exception as e:
            logger.error(f"Refusing to commit state that cannot be serialized: {e}")
            raise

    def _write(self, payloads: Dict[str, str]) -> None:
        """Write serialized collections to their slots."""
        for key, payload in payloads.items():
            try:
                self._port.set(key, payload)
            except OSError as e:
                logger.error(f"Failed to persist {key}: {e}")

    def _mutated(self) -> None:
        self._dirty = True

    @contextmanager
    def transaction(self) -> Iterator["EntityStore"]:
        """
        Group several mutations into one logical unit.

        Nested blocks join the outermost one. When the outermost block exits
        cleanly every collection is serialized and then persisted once. An
        exception, including one raised while serializing, restores the
        collections to their state at entry and persists nothing.
        """
        with self._lock:
            outermost = self._depth == 0
            snapshot = copy.deepcopy(self._collections) if outermost else None
            self._depth += 1
            payloads = None
            try:
                yield self
                if outermost and self._dirty:
                    payloads = self._serialize_all()
            except BaseException:
                self._depth -= 1
                if outermost:
                    if self._dirty:
                        logger.warning("Transaction rolled back")
                    self._collections = snapshot
                    self._dirty = False
                raise
            self._depth -= 1
            if payloads is not None:
                self._dirty = False
                self._write(payloads)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _new_id(self, collection: str) -> str:
        existing = {item.id for item in self._collections[collection]}
        prefix = ID_PREFIXES[collection]
        while True:
            candidate = f"{prefix}-{utc_now().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"
            if candidate not in existing:
                return candidate

    def _index_of(self, collection: str, item_id: str) -> int:
        for i, item in enumerate(self._collections[collection]):
            if item.id == item_id:
                return i
        return -1

    def _require_index(self, collection: str, kind: str, item_id: str) -> int:
        index = self._index_of(collection, item_id)
        if index < 0:
            logger.error(f"Unknown {kind} id: {item_id}")
            raise InvalidReferenceError(kind, item_id)
        return index

    def _check_task_column(self, channel_id: str, column_id: str) -> Channel:
        channel = self.require_channel(channel_id)
        if channel.get_column(column_id) is None:
            logger.error(f"Column {column_id} does not belong to channel {channel_id}")
            raise InvalidReferenceError("column", column_id, f"not in channel {channel_id}")
        return channel

    def _typed_values(self, channel: Channel, values: Dict[str, Any]) -> Dict[str, FieldValue]:
        """Coerce raw custom field values against the channel's field definitions."""
        typed: Dict[str, FieldValue] = {}
        for field_id, value in dict(values).items():
            if isinstance(value, FieldValue):
                typed[field_id] = value
                continue
            custom_field = channel.get_custom_field(field_id)
            if custom_field is None:
                raise FieldValueError(field_id, f"no such custom field in channel {channel.id}")
            typed[field_id] = coerce_field_value(custom_field, value)
        return typed

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    @property
    def channels(self) -> List[Channel]:
        return list(self._collections[CHANNELS])

    @property
    def tasks(self) -> List[Task]:
        return list(self._collections[TASKS])

    @property
    def users(self) -> List[User]:
        return list(self._collections[USERS])

    @property
    def roles(self) -> List[Role]:
        return list(self._collections[ROLES])

    @property
    def ot_entries(self) -> List[OTEntry]:
        return list(self._collections[OT_ENTRIES])

    @property
    def completed_tasks(self) -> Tuple[CompletedTask, ...]:
        return tuple(self._collections[COMPLETED_TASKS])

    @property
    def stage_events(self) -> Tuple[StageEvent, ...]:
        return tuple(self._collections[STAGE_EVENTS])

    @property
    def app_settings(self) -> AppSettings:
        return self._collections[APP_SETTINGS]

    def get_channel(self, channel_id: str) -> Optional[Channel]:
        index = self._index_of(CHANNELS, channel_id)
        return self._collections[CHANNELS][index] if index >= 0 else None

    def require_channel(self, channel_id: str) -> Channel:
        return self._collections[CHANNELS][self._require_index(CHANNELS, "channel", channel_id)]

    def get_task(self, task_id: str) -> Optional[Task]:
        index = self._index_of(TASKS, task_id)
        return self._collections[TASKS][index] if index >= 0 else None

    def require_task(self, task_id: str) -> Task:
        return self._collections[TASKS][self._require_index(TASKS, "task", task_id)]

    def get_user(self, user_id: str) -> Optional[User]:
        index = self._index_of(USERS, user_id)
        return self._collections[USERS][index] if index >= 0 else None

    def tasks_for_channel(self, channel_id: str) -> List[Task]:
        return [t for t in self._collections[TASKS] if t.channel_id == channel_id]

    # -------------------------------------------------------------------------
    # Channels
    # -------------------------------------------------------------------------

    def add_channel(self, name: str, **fields: Any) -> Channel:
        _check_fields(Channel, fields)
        with self.transaction():
            channel = Channel(id=self._new_id(CHANNELS), name=name, created_at=utc_now(), **fields)
            validate_columns(channel.columns)
            self._collections[CHANNELS].append(channel)
            self._mutated()
        logger.info(f"Channel created: {channel.id} ({channel.name})")
        return channel

    def update_channel(self, channel_id: str, **updates: Any) -> Channel:
        """Shallow-merge ``updates`` into a channel."""
        _check_fields(Channel, updates)
        with self.transaction():
            index = self._require_index(CHANNELS, "channel", channel_id)
            updated = dataclasses.replace(self._collections[CHANNELS][index], **updates)
            if "columns" in updates:
                validate_columns(updated.columns)
                orphaned = [
                    t.id for t in self.tasks_for_channel(channel_id)
                    if updated.get_column(t.column_id) is None
                ]
                if orphaned:
                    raise ChannelConfigError(
                        f"Columns still hold active tasks: {sorted(orphaned)}"
                    )
            self._collections[CHANNELS][index] = updated
            self._mutated()
        return updated

    def delete_channel(self, channel_id: str) -> None:
        with self.transaction():
            index = self._require_index(CHANNELS, "channel", channel_id)
            del self._collections[CHANNELS][index]
            self._mutated()
        logger.info(f"Channel deleted: {channel_id}")

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def add_task(self, title: str, channel_id: str, column_id: str, **fields: Any) -> Task:
        _check_fields(Task, fields, _IMMUTABLE_FIELDS | {"updated_at"})
        with self.transaction():
            channel = self._check_task_column(channel_id, column_id)
            if "custom_field_values" in fields:
                fields["custom_field_values"] = self._typed_values(channel, fields["custom_field_values"])
            now = utc_now()
            task = Task(
                id=self._new_id(TASKS),
                title=title,
                channel_id=channel_id,
                column_id=column_id,
                created_at=now,
                updated_at=now,
                **fields,
            )
            self._collections[TASKS].append(task)
            self._mutated()
        return task

    def update_task(self, task_id: str, **updates: Any) -> Task:
        """Shallow-merge ``updates`` into a task and refresh ``updated_at``."""
        _check_fields(Task, updates, _IMMUTABLE_FIELDS | {"updated_at"})
        with self.transaction():
            index = self._require_index(TASKS, "task", task_id)
            current = self._collections[TASKS][index]
            updated = dataclasses.replace(current, **updates, updated_at=utc_now())
            if "channel_id" in updates or "column_id" in updates:
                self._check_task_column(updated.channel_id, updated.column_id)
            if "custom_field_values" in updates:
                channel = self.require_channel(updated.channel_id)
                updated.custom_field_values = self._typed_values(channel, updated.custom_field_values)
            self._collections[TASKS][index] = updated
            self._mutated()
        return updated

    def delete_task(self, task_id: str) -> None:
        with self.transaction():
            index = self._require_index(TASKS, "task", task_id)
            del self._collections[TASKS][index]
            self._mutated()

    # -------------------------------------------------------------------------
    # Append-only records
    # -------------------------------------------------------------------------

    def add_stage_event(
        self,
        task_id: str,
        channel_id: str,
        actor_user_id: str,
        from_column_id: str,
        to_column_id: str,
        event_type: StageEventType,
    ) -> StageEvent:
        with self.transaction():
            event = StageEvent(
                id=self._new_id(STAGE_EVENTS),
                task_id=task_id,
                channel_id=channel_id,
                actor_user_id=actor_user_id,
                from_column_id=from_column_id,
                to_column_id=to_column_id,
                event_type=StageEventType(event_type),
                occurred_at=utc_now(),
            )
            self._collections[STAGE_EVENTS].append(event)
            self._mutated()
        return event

    def add_completed_task(self, snapshot: CompletedTask) -> CompletedTask:
        """Store a finalization snapshot under a freshly generated id."""
        with self.transaction():
            record = dataclasses.replace(snapshot, id=self._new_id(COMPLETED_TASKS))
            self._collections[COMPLETED_TASKS].append(record)
            self._mutated()
        return record

    # -------------------------------------------------------------------------
    # Users and roles
    # -------------------------------------------------------------------------

    def add_user(self, name: str, **fields: Any) -> User:
        _check_fields(User, fields)
        with self.transaction():
            user = User(id=self._new_id(USERS), name=name, **fields)
            self._collections[USERS].append(user)
            self._mutated()
        return user

    def update_user(self, user_id: str, **updates: Any) -> User:
        _check_fields(User, updates)
        with self.transaction():
            index = self._require_index(USERS, "user", user_id)
            updated = dataclasses.replace(self._collections[USERS][index], **updates)
            self._collections[USERS][index] = updated
            self._mutated()
        return updated

    def remove_user(self, user_id: str) -> None:
        with self.transaction():
            index = self._require_index(USERS, "user", user_id)
            del self._collections[USERS][index]
            self._mutated()

    def add_role(self, name: str) -> Role:
        with self.transaction():
            role = Role(id=self._new_id(ROLES), name=name)
            self._collections[ROLES].append(role)
            self._mutated()
        return role

    def remove_role(self, role_id: str) -> None:
        with self.transaction():
            index = self._require_index(ROLES, "role", role_id)
            del self._collections[ROLES][index]
            self._mutated()

    # -------------------------------------------------------------------------
    # Overtime entries and settings
    # -------------------------------------------------------------------------

    def add_ot_entry(self, **fields: Any) -> OTEntry:
        _check_fields(OTEntry, fields)
        with self.transaction():
            entry = OTEntry(id=self._new_id(OT_ENTRIES), created_at=utc_now(), **fields)
            self._collections[OT_ENTRIES].append(entry)
            self._mutated()
        return entry

    def update_ot_entry(self, entry_id: str, **updates: Any) -> OTEntry:
        _check_fields(OTEntry, updates)
        with self.transaction():
            index = self._require_index(OT_ENTRIES, "ot entry", entry_id)
            updated = dataclasses.replace(self._collections[OT_ENTRIES][index], **updates)
            self._collections[OT_ENTRIES][index] = updated
            self._mutated()
        return updated

    def delete_ot_entry(self, entry_id: str) -> None:
        with self.transaction():
            index = self._require_index(OT_ENTRIES, "ot entry", entry_id)
            del self._collections[OT_ENTRIES][index]
            self._mutated()

    def update_app_settings(self, **updates: Any) -> AppSettings:
        _check_fields(AppSettings, updates, frozenset())
        with self.transaction():
            updated = dataclasses.replace(self._collections[APP_SETTINGS], **updates)
            self._collections[APP_SETTINGS] = updated
            self._mutated()
        return updated
