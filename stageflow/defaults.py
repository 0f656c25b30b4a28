"""
Built-in default dataset.

The entity store falls back to this data for any collection whose slot is
empty or unreadable. A YAML seed file (``STAGEFLOW_SEED_FILE``) can replace
individual collections; it uses the same camelCase layout as the persisted
JSON.
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .field_values import utc_now
from .pipeline_model import (
    AppSettings,
    Channel,
    Column,
    CompletedTask,
    OTEntry,
    Role,
    StageEvent,
    Task,
    User,
)

logger = logging.getLogger("defaults")

# -----------------------------------------------------------------------------
# Collection names
# -----------------------------------------------------------------------------
CHANNELS = "channels"
TASKS = "tasks"
USERS = "users"
ROLES = "roles"
OT_ENTRIES = "ot_entries"
COMPLETED_TASKS = "completed_tasks"
STAGE_EVENTS = "stage_events"
APP_SETTINGS = "app_settings"

LIST_COLLECTIONS = (CHANNELS, TASKS, USERS, ROLES, OT_ENTRIES, COMPLETED_TASKS, STAGE_EVENTS)

ENTITY_TYPES = {
    CHANNELS: Channel,
    TASKS: Task,
    USERS: User,
    ROLES: Role,
    OT_ENTRIES: OTEntry,
    COMPLETED_TASKS: CompletedTask,
    STAGE_EVENTS: StageEvent,
}


# -----------------------------------------------------------------------------
# Built-in data
# -----------------------------------------------------------------------------
def default_columns() -> List[Column]:
    return [
        Column(id="script", name="Script", order=0),
        Column(id="audio", name="Audio", order=1),
        Column(id="edit", name="Edit", order=2),
        Column(id="qa", name="QA", order=3),
        Column(id="upload", name="Upload", order=4),
    ]


def default_roles() -> List[Role]:
    return [
        Role(id="script_writer", name="Script Writer"),
        Role(id="audio_editor", name="Audio Editor"),
        Role(id="video_editor", name="Video Editor"),
    ]


def default_users() -> List[User]:
    return [
        User(id="owner-1", name="Admin Owner", email="owner@passive.com", employee_code="OWN001", role="owner"),
        User(id="manager-1", name="Channel Manager", email="manager@passive.com", employee_code="MGR001", role="channel_manager"),
        User(id="script-1", name="Script Writer", email="script@passive.com", employee_code="SCR001", role="script_writer"),
    ]


def default_channels() -> List[Channel]:
    return [
        Channel(
            id="1",
            name="Tech Reviews",
            description="Latest gadget reviews and tech news",
            columns=default_columns(),
            manager_id="manager-1",
            members=["manager-1", "script-1"],
        )
    ]


def default_tasks() -> List[Task]:
    return [
        Task(
            id="1",
            title="iPhone 15 Pro Review Script",
            description="Write comprehensive review covering camera, performance, and battery",
            channel_id="1",
            column_id="script",
            assigned_to="script-1",
            due_date=utc_now() + timedelta(days=1),
        )
    ]


def default_collections() -> Dict[str, Any]:
    """Fresh copies of every default collection."""
    return {
        CHANNELS: default_channels(),
        TASKS: default_tasks(),
        USERS: default_users(),
        ROLES: default_roles(),
        OT_ENTRIES: [],
        COMPLETED_TASKS: [],
        STAGE_EVENTS: [],
        APP_SETTINGS: AppSettings(),
    }


def empty_collections() -> Dict[str, Any]:
    collections: Dict[str, Any] = {name: [] for name in LIST_COLLECTIONS}
    collections[APP_SETTINGS] = AppSettings()
    return collections


# -----------------------------------------------------------------------------
# YAML seed
# -----------------------------------------------------------------------------
def load_seed_file(path: Path) -> Dict[str, Any]:
    """
    Load collections from a YAML seed file.

    Only the collections present in the file are returned. Raises
    FileNotFoundError, yaml.YAMLError or ValueError on unusable input.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Seed file {path} must contain a mapping of collections")

    seeded: Dict[str, Any] = {}
    for name, entity_type in ENTITY_TYPES.items():
        if name in data:
            seeded[name] = [entity_type.from_dict(item) for item in data[name] or []]
    if APP_SETTINGS in data:
        seeded[APP_SETTINGS] = AppSettings.from_dict(data[APP_SETTINGS] or {})

    logger.info(f"Loaded seed collections from {path}: {sorted(seeded)}")
    return seeded


def build_fallback_collections(seed_file: Optional[Path] = None) -> Dict[str, Any]:
    """Defaults, overlaid with the seed file's collections when one is given."""
    collections = default_collections()
    if seed_file is None:
        return collections
    try:
        collections.update(load_seed_file(seed_file))
    except (OSError, yaml.YAMLError, ValueError, KeyError, TypeError) as e:
        logger.warning(f"Ignoring seed file {seed_file}: {e}")
    return collections
