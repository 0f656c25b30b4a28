"""
Unit Tests for the Entity Store and Persistence Ports

Test coverage for:
- Loading with defaults, seed files and malformed slots
- Write-through persistence and reload
- Transactions (single flush, rollback)
- Custom field values coerced on the way in, rollback on unserializable state
- Id generation and reference checks
- File-backed key-value port
"""

import json
from datetime import datetime, timezone

import pytest

from stageflow.audit_trail import build_completed_task
from stageflow.entity_store import EntityStore
from stageflow.errors import ChannelConfigError, FieldValueError, InvalidReferenceError
from stageflow.field_values import CustomFieldType, FieldValue
from stageflow.pipeline_model import Column, CustomField, OTType, StageEventType
from stageflow.storage_port import FileKeyValueStore, InMemoryKeyValueStore


# -----------------------------------------------------------------------------
# Test 1: Loading
# -----------------------------------------------------------------------------
class TestLoading:

    def test_defaults_on_empty_port(self):
        store = EntityStore(InMemoryKeyValueStore())

        assert [c.name for c in store.channels] == ["Tech Reviews"]
        assert store.get_task("1").column_id == "script"
        assert {u.role for u in store.users} >= {"owner", "channel_manager"}
        assert store.app_settings.bookmarks_enabled is True

    def test_empty_without_seed(self, store):
        assert store.channels == []
        assert store.tasks == []

    def test_malformed_slot_falls_back(self, caplog):
        port = InMemoryKeyValueStore({"passive_channels_data": "{not json"})

        store = EntityStore(port)

        assert [c.name for c in store.channels] == ["Tech Reviews"]
        assert "Could not load passive_channels_data" in caplog.text

    def test_wrong_shape_falls_back(self):
        port = InMemoryKeyValueStore({"passive_tasks_data": json.dumps({"id": "1"})})

        store = EntityStore(port, seed_defaults=False)

        assert store.tasks == []

    def test_key_prefix(self, port):
        store = EntityStore(port, seed_defaults=False, key_prefix="studio")
        store.add_role("Narrator")

        assert "studio_roles_data" in set(port.keys())

    def test_seed_file(self, tmp_path):
        seed = tmp_path / "seed.yaml"
        seed.write_text(
            "channels:\n"
            "  - id: c9\n"
            "    name: Cooking\n"
            "    columns:\n"
            "      - {id: prep, name: Prep, order: 0}\n"
            "      - {id: shoot, name: Shoot, order: 1}\n"
            "tasks: []\n"
        )

        store = EntityStore(InMemoryKeyValueStore(), seed_file=seed)

        assert [c.id for c in store.channels] == ["c9"]
        assert store.tasks == []
        # collections absent from the file keep their defaults
        assert store.users

    def test_broken_seed_file_is_ignored(self, tmp_path):
        seed = tmp_path / "seed.yaml"
        seed.write_text("channels: [unclosed")

        store = EntityStore(InMemoryKeyValueStore(), seed_file=seed)

        assert [c.name for c in store.channels] == ["Tech Reviews"]

    def test_legacy_values_retyped_on_load(self, port, store, channel, task):
        payload = json.loads(port.get("passive_tasks_data"))
        payload[0]["customFieldValues"] = {"video-link": "https://x.com"}
        port.set("passive_tasks_data", json.dumps(payload))

        store.reload()

        assert store.get_task(task.id).custom_field_values["video-link"] == FieldValue(
            CustomFieldType.LINK, "https://x.com"
        )

    def test_legacy_completed_values_retyped_on_load(self, port, store, channel, task):
        air_date = CustomField(id="air-date", name="Air Date", type=CustomFieldType.DATE, order=1)
        channel = store.update_channel(channel.id, custom_fields=channel.custom_fields + [air_date])
        store.add_completed_task(build_completed_task(task, channel, "manager-1"))
        legacy = {"air-date": "2024-02-01T00:00:00.000Z", "video-link": "https://x.com"}
        for key in ("passive_tasks_data", "passive_completed_tasks_data"):
            payload = json.loads(port.get(key))
            payload[0]["customFieldValues"] = legacy
            port.set(key, json.dumps(payload))

        store.reload()

        expected = FieldValue(CustomFieldType.DATE, datetime(2024, 2, 1, tzinfo=timezone.utc))
        snapshot = store.completed_tasks[0]
        assert snapshot.custom_field_values["air-date"] == expected
        assert snapshot.custom_field_values["video-link"] == FieldValue(CustomFieldType.LINK, "https://x.com")
        assert store.get_task(task.id).custom_field_values["air-date"] == expected


# -----------------------------------------------------------------------------
# Test 2: Persistence
# -----------------------------------------------------------------------------
class TestPersistence:

    def test_every_mutation_is_written(self, port, store, channel):
        store.add_task(title="T", channel_id=channel.id, column_id="script")

        stored = json.loads(port.get("passive_tasks_data"))
        assert [t["title"] for t in stored] == ["T"]

    def test_reload_restores_state(self, port, store, task):
        store.update_task(
            task.id,
            custom_field_values={"video-link": FieldValue(CustomFieldType.LINK, "https://x.com")},
        )

        reopened = EntityStore(port, seed_defaults=False)

        restored = reopened.get_task(task.id)
        assert restored.get_value("video-link") == "https://x.com"
        assert restored.created_at == task.created_at

    def test_write_failure_is_logged_not_raised(self, store, port, caplog, monkeypatch):
        def fail(key, value):
            raise OSError("read-only filesystem")

        monkeypatch.setattr(port, "set", fail)

        role = store.add_role("Narrator")

        assert role in store.roles
        assert "Failed to persist" in caplog.text

    def test_ot_entries_and_settings(self, port, store, channel):
        entry = store.add_ot_entry(
            user_id="writer-1",
            channel_id=channel.id,
            date=datetime(2024, 2, 1, tzinfo=timezone.utc),
            type=OTType.HALF_DAY,
            amount=500,
            logged_by="manager-1",
        )
        store.update_ot_entry(entry.id, amount=750)
        store.update_app_settings(bookmarks_enabled=False)

        reopened = EntityStore(port, seed_defaults=False)
        assert reopened.ot_entries[0].amount == 750
        assert reopened.app_settings.bookmarks_enabled is False

        reopened.delete_ot_entry(entry.id)
        assert reopened.ot_entries == []


# -----------------------------------------------------------------------------
# Test 3: Transactions
# -----------------------------------------------------------------------------
class TestTransactions:

    def test_flushes_once_at_end(self, store, channel, port, monkeypatch):
        writes = []
        original = port.set
        monkeypatch.setattr(port, "set", lambda k, v: (writes.append(k), original(k, v)))

        with store.transaction():
            store.add_task(title="A", channel_id=channel.id, column_id="script")
            store.add_task(title="B", channel_id=channel.id, column_id="script")
            assert writes == []

        assert len(writes) == len(set(writes))
        assert "passive_tasks_data" in writes

    def test_rollback_on_error(self, store, channel, port):
        before = port.get("passive_tasks_data")

        with pytest.raises(RuntimeError):
            with store.transaction():
                store.add_task(title="A", channel_id=channel.id, column_id="script")
                raise RuntimeError("boom")

        assert store.tasks == []
        assert port.get("passive_tasks_data") == before

    def test_nested_blocks_join_outermost(self, store, channel):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.add_task(title="A", channel_id=channel.id, column_id="script")
                with store.transaction():
                    store.add_task(title="B", channel_id=channel.id, column_id="script")
                raise RuntimeError("boom")

        assert store.tasks == []

    def test_no_flush_without_mutation(self, store, port, monkeypatch):
        writes = []
        monkeypatch.setattr(port, "set", lambda k, v: writes.append(k))

        with store.transaction():
            store.channels

        assert writes == []


# -----------------------------------------------------------------------------
# Test 4: Ids and References
# -----------------------------------------------------------------------------
class TestReferences:

    def test_ids_are_unique(self, store, channel):
        ids = {store.add_task(title=str(i), channel_id=channel.id, column_id="script").id for i in range(25)}

        assert len(ids) == 25
        assert all(i.startswith("task-") for i in ids)

    def test_unknown_task(self, store):
        with pytest.raises(InvalidReferenceError) as exc_info:
            store.update_task("nope", title="x")

        assert exc_info.value.kind == "task"
        assert exc_info.value.ref_id == "nope"

    def test_task_column_must_belong_to_channel(self, store, channel):
        with pytest.raises(InvalidReferenceError):
            store.add_task(title="T", channel_id=channel.id, column_id="upload")

    def test_task_in_unknown_channel(self, store):
        with pytest.raises(InvalidReferenceError):
            store.add_task(title="T", channel_id="ghost", column_id="script")

    def test_immutable_fields(self, store, task):
        with pytest.raises(ValueError):
            store.update_task(task.id, id="other")
        with pytest.raises(ValueError):
            store.update_task(task.id, bogus=True)

    def test_update_refreshes_updated_at(self, store, task):
        updated = store.update_task(task.id, title="New title")

        assert updated.updated_at >= task.updated_at
        assert updated.created_at == task.created_at

    def test_bad_columns_rejected(self, store):
        with pytest.raises(ChannelConfigError):
            store.add_channel(name="Broken", columns=[Column(id="a", name="A", order=1)])

    def test_columns_holding_tasks_cannot_be_dropped(self, store, channel, task):
        with pytest.raises(ChannelConfigError):
            store.update_channel(channel.id, columns=[Column(id="audio", name="Audio", order=0)])

    def test_append_only_records(self, store, task, channel):
        event = store.add_stage_event(
            task_id=task.id,
            channel_id=channel.id,
            actor_user_id="writer-1",
            from_column_id="script",
            to_column_id="audio",
            event_type=StageEventType.STAGE_COMPLETED,
        )

        assert store.stage_events == (event,)
        assert not hasattr(store, "update_stage_event")
        assert not hasattr(store, "delete_stage_event")


# -----------------------------------------------------------------------------
# Test 5: File Port
# -----------------------------------------------------------------------------
class TestFileKeyValueStore:

    def test_set_get_delete(self, tmp_path):
        port = FileKeyValueStore(tmp_path / "data")

        port.set("passive_roles_data", "[]")

        assert port.get("passive_roles_data") == "[]"
        assert list(port.keys()) == ["passive_roles_data"]
        assert not list((tmp_path / "data").glob("*.tmp"))

        port.delete("passive_roles_data")
        assert port.get("passive_roles_data") is None

    def test_store_survives_restart(self, tmp_path):
        first = EntityStore(FileKeyValueStore(tmp_path), seed_defaults=False)
        channel = first.add_channel(name="Gaming", columns=[Column(id="a", name="A", order=0)])

        second = EntityStore(FileKeyValueStore(tmp_path), seed_defaults=False)

        assert second.get_channel(channel.id).name == "Gaming"


# -----------------------------------------------------------------------------
# Test 6: Users and Roles
# -----------------------------------------------------------------------------
class TestUsersAndRoles:

    def test_user_lifecycle(self, port, store):
        user = store.add_user("Ana", email="ana@studio.com", role="script_writer")
        store.update_user(user.id, active=False)

        reopened = EntityStore(port, seed_defaults=False)
        assert reopened.get_user(user.id).active is False
        assert user.id.startswith("user-")

        reopened.remove_user(user.id)
        assert reopened.get_user(user.id) is None

    def test_role_lifecycle(self, store):
        role = store.add_role("Thumbnail Artist")

        store.remove_role(role.id)

        assert store.roles == []
        with pytest.raises(InvalidReferenceError):
            store.remove_role(role.id)


# -----------------------------------------------------------------------------
# Test 7: Custom Field Values
# -----------------------------------------------------------------------------
class TestCustomFieldValues:

    def test_raw_value_is_coerced_on_update(self, port, store, task):
        updated = store.update_task(task.id, custom_field_values={"video-link": " https://x.com "})

        assert updated.custom_field_values["video-link"] == FieldValue(CustomFieldType.LINK, "https://x.com")
        stored = json.loads(port.get("passive_tasks_data"))
        assert stored[0]["customFieldValues"]["video-link"] == {"type": "link", "value": "https://x.com"}

        # the store keeps accepting mutations afterwards
        store.add_role("Narrator")
        assert [r["name"] for r in json.loads(port.get("passive_roles_data"))] == ["Narrator"]

    def test_raw_value_is_coerced_on_add(self, store, channel):
        task = store.add_task(
            title="T",
            channel_id=channel.id,
            column_id="script",
            custom_field_values={"video-link": "https://x.com"},
        )

        assert task.custom_field_values["video-link"].field_type == CustomFieldType.LINK

    def test_invalid_raw_value_leaves_task_untouched(self, port, store, task):
        before = port.get("passive_tasks_data")

        with pytest.raises(FieldValueError):
            store.update_task(task.id, custom_field_values={"video-link": "not a link"})

        assert store.get_task(task.id).custom_field_values == {}
        assert port.get("passive_tasks_data") == before

    def test_raw_value_for_unknown_field_rejected(self, store, task):
        with pytest.raises(FieldValueError):
            store.update_task(task.id, custom_field_values={"ghost": "x"})

        assert store.get_task(task.id).custom_field_values == {}

    def test_unserializable_state_rolls_back(self, port, store, task):
        before = port.get("passive_tasks_data")
        broken = FieldValue(CustomFieldType.NUMBER, object())

        with pytest.raises(TypeError):
            store.update_task(task.id, custom_field_values={"video-link": broken})

        assert store.get_task(task.id).custom_field_values == {}
        assert port.get("passive_tasks_data") == before

        store.update_task(task.id, title="Renamed")
        assert json.loads(port.get("passive_tasks_data"))[0]["title"] == "Renamed"
