"""
Pytest configuration for Stageflow tests.

This module provides:
1. An in-memory key-value port and an empty store built on it
2. A two-column scenario channel (Script -> Audio) with a mandatory link field
3. Acting users for each role the permission rules distinguish
"""

import pytest

from stageflow.entity_store import EntityStore
from stageflow.field_values import CustomFieldType
from stageflow.pipeline_model import (
    ActingUser,
    Column,
    ColumnAssignment,
    CustomField,
)
from stageflow.storage_port import InMemoryKeyValueStore


# -----------------------------------------------------------------------------
# Store Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def port():
    """Empty in-memory persistence boundary."""
    return InMemoryKeyValueStore()


@pytest.fixture
def store(port):
    """Store with no seeded data."""
    return EntityStore(port, seed_defaults=False)


# -----------------------------------------------------------------------------
# Scenario Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def video_link_field():
    """Link field that must be filled before a task leaves Script."""
    return CustomField(
        id="video-link",
        name="Video Link",
        type=CustomFieldType.LINK,
        order=0,
        required_in_columns=["script"],
    )


@pytest.fixture
def channel(store, video_link_field):
    """Channel with columns script(0) -> audio(1)."""
    return store.add_channel(
        name="Tech Reviews",
        columns=[
            Column(id="script", name="Script", order=0),
            Column(id="audio", name="Audio", order=1),
        ],
        custom_fields=[video_link_field],
        members=["writer-1", "editor-1"],
        manager_id="manager-1",
        column_assignments=[
            ColumnAssignment(column_id="script", assigned_user_ids=["writer-1"]),
            ColumnAssignment(column_id="audio", assigned_user_ids=["editor-1"], assigned_roles=["audio_editor"]),
        ],
    )


@pytest.fixture
def task(store, channel):
    """Task sitting in the Script column with no field values."""
    return store.add_task(
        title="iPhone Review",
        channel_id=channel.id,
        column_id="script",
        assigned_to="writer-1",
    )


# -----------------------------------------------------------------------------
# Acting Users
# -----------------------------------------------------------------------------
@pytest.fixture
def owner():
    return ActingUser(user_id="owner-1", role="owner")


@pytest.fixture
def manager():
    return ActingUser(user_id="manager-1", role="channel_manager")


@pytest.fixture
def writer():
    return ActingUser(user_id="writer-1", role="script_writer")


@pytest.fixture
def editor():
    return ActingUser(user_id="editor-1", role="audio_editor")


@pytest.fixture
def outsider():
    return ActingUser(user_id="stranger-1", role="script_writer")
