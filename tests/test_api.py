"""
Tests for the HTTP routes.

Every request carries the acting user in the X-User-Id / X-User-Role headers.
"""

import pytest
from fastapi.testclient import TestClient

from stageflow.main import create_app

WRITER = {"X-User-Id": "writer-1", "X-User-Role": "script_writer"}
EDITOR = {"X-User-Id": "editor-1", "X-User-Role": "audio_editor"}
OUTSIDER = {"X-User-Id": "stranger-1", "X-User-Role": "script_writer"}
OWNER = {"X-User-Id": "owner-1", "X-User-Role": "owner"}
MANAGER = {"X-User-Id": "manager-1", "X-User-Role": "channel_manager"}


# -----------------------------------------------------------------------------
# Test Client Setup
# -----------------------------------------------------------------------------
@pytest.fixture
def client(store):
    """Test client over the shared in-memory store."""
    return TestClient(create_app(store=store))


# -----------------------------------------------------------------------------
# Health Check Tests
# -----------------------------------------------------------------------------
class TestHealthEndpoints:

    def test_root_endpoint(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "Stageflow"

    def test_health_endpoint(self, client, task):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["active_tasks"] == 1
        assert data["last_stage_event_at"] is None


# -----------------------------------------------------------------------------
# Channel Tests
# -----------------------------------------------------------------------------
class TestChannels:

    def test_requires_acting_user(self, client):
        assert client.get("/api/channels").status_code == 401

    def test_lists_member_channels_only(self, client, channel):
        assert client.get("/api/channels", headers=WRITER).json()["count"] == 1
        assert client.get("/api/channels", headers=OUTSIDER).json()["count"] == 0
        assert client.get("/api/channels", headers=OWNER).json()["count"] == 1

    def test_get_channel(self, client, channel, task):
        response = client.get(f"/api/channels/{channel.id}", headers=WRITER)

        assert response.status_code == 200
        data = response.json()
        assert data["channel"]["name"] == "Tech Reviews"
        assert [t["id"] for t in data["tasks"]] == [task.id]

    def test_get_channel_forbidden(self, client, channel):
        assert client.get(f"/api/channels/{channel.id}", headers=OUTSIDER).status_code == 403

    def test_get_unknown_channel(self, client):
        assert client.get("/api/channels/ghost", headers=OWNER).status_code == 404

    def test_create_task(self, client, channel):
        response = client.post(
            f"/api/channels/{channel.id}/tasks",
            json={"title": "Pixel Review"},
            headers=WRITER,
        )

        assert response.status_code == 201
        task = response.json()["task"]
        assert task["columnId"] == "script"
        assert task["assignedTo"] == "writer-1"

    def test_create_task_forbidden(self, client, channel):
        response = client.post(
            f"/api/channels/{channel.id}/tasks",
            json={"title": "Pixel Review"},
            headers=OUTSIDER,
        )

        assert response.status_code == 403


# -----------------------------------------------------------------------------
# Field Tests
# -----------------------------------------------------------------------------
class TestFields:

    def test_missing_fields_checklist(self, client, task):
        response = client.get(f"/api/tasks/{task.id}/missing-fields", headers=WRITER)

        assert response.status_code == 200
        data = response.json()
        assert data["missing"] == ["Video Link"]
        assert data["is_terminal"] is False
        assert data["fields"][0]["complete"] is False

    def test_can_edit(self, client, task):
        response = client.get(f"/api/tasks/{task.id}/fields/video-link/can-edit", headers=WRITER)

        assert response.status_code == 200
        assert response.json()["can_edit"] is True

    def test_can_edit_unknown_field(self, client, task):
        response = client.get(f"/api/tasks/{task.id}/fields/ghost/can-edit", headers=WRITER)

        assert response.status_code == 404

    def test_set_value(self, client, task):
        response = client.put(
            f"/api/tasks/{task.id}/fields/video-link",
            json={"value": "https://x.com"},
            headers=WRITER,
        )

        assert response.status_code == 200
        values = response.json()["task"]["customFieldValues"]
        assert values["video-link"] == {"type": "link", "value": "https://x.com"}

    def test_set_invalid_value(self, client, task):
        response = client.put(
            f"/api/tasks/{task.id}/fields/video-link",
            json={"value": "not a link"},
            headers=WRITER,
        )

        assert response.status_code == 400


# -----------------------------------------------------------------------------
# Advance Tests
# -----------------------------------------------------------------------------
class TestAdvance:

    def test_missing_fields_returns_422(self, client, store, task):
        response = client.post(f"/api/tasks/{task.id}/advance", headers=WRITER)

        assert response.status_code == 422
        assert response.json()["detail"]["missing_fields"] == ["Video Link"]
        assert store.get_task(task.id).column_id == "script"

    def test_advance_and_finalize(self, client, store, task):
        client.put(
            f"/api/tasks/{task.id}/fields/video-link",
            json={"value": "https://x.com"},
            headers=WRITER,
        )

        moved = client.post(f"/api/tasks/{task.id}/advance", headers=WRITER)
        assert moved.status_code == 200
        assert moved.json()["outcome"] == "advanced"
        assert moved.json()["new_column_id"] == "audio"

        finalized = client.post(
            f"/api/tasks/{task.id}/advance",
            json={"video_url": "https://youtu.be/abc"},
            headers=EDITOR,
        )
        assert finalized.status_code == 200
        assert finalized.json()["outcome"] == "finalized"
        assert store.get_task(task.id) is None
        assert store.completed_tasks[0].video_url == "https://youtu.be/abc"

        history = client.get(f"/api/tasks/{task.id}/history", headers=EDITOR)
        assert history.status_code == 200
        assert history.json()["path"] == ["script", "audio"]

        completed = client.get("/api/completed-tasks", headers=EDITOR).json()
        assert completed["count"] == 1
        assert completed["completed_tasks"][0]["columnName"] == "Audio"

        summary = client.get("/api/stage-events/summary", headers=OWNER).json()
        assert summary["stages_completed"] == 1
        assert summary["finalized"] == 1

    def test_unknown_task_returns_404(self, client):
        assert client.post("/api/tasks/ghost/advance", headers=OWNER).status_code == 404

    def test_outsider_cannot_advance(self, client, task):
        assert client.post(f"/api/tasks/{task.id}/advance", headers=OUTSIDER).status_code == 403

    def test_history_of_unknown_task(self, client):
        assert client.get("/api/tasks/ghost/history", headers=OWNER).status_code == 404

    def test_history_of_deleted_channel_is_owner_only(self, client, task, channel):
        client.put(
            f"/api/tasks/{task.id}/fields/video-link",
            json={"value": "https://x.com"},
            headers=WRITER,
        )
        client.post(f"/api/tasks/{task.id}/advance", headers=WRITER)
        assert client.delete(f"/api/channels/{channel.id}", headers=OWNER).status_code == 200

        assert client.get(f"/api/tasks/{task.id}/history", headers=WRITER).status_code == 403
        history = client.get(f"/api/tasks/{task.id}/history", headers=OWNER)
        assert history.status_code == 200
        assert history.json()["path"] == ["script", "audio"]


# -----------------------------------------------------------------------------
# Channel Administration Tests
# -----------------------------------------------------------------------------
class TestChannelAdministration:

    def test_create_channel(self, client):
        response = client.post(
            "/api/channels",
            json={
                "name": "Cooking",
                "columns": [{"id": "prep", "name": "Prep"}, {"id": "shoot", "name": "Shoot"}],
                "manager_id": "manager-1",
            },
            headers=MANAGER,
        )

        assert response.status_code == 201
        channel = response.json()["channel"]
        assert [(c["id"], c["order"]) for c in channel["columns"]] == [("prep", 0), ("shoot", 1)]
        assert channel["managerId"] == "manager-1"

    def test_create_channel_default_columns(self, client):
        response = client.post("/api/channels", json={"name": "Shorts"}, headers=OWNER)

        assert response.status_code == 201
        assert [c["id"] for c in response.json()["channel"]["columns"]] == ["script", "audio", "edit", "qa", "upload"]

    def test_writer_cannot_create_channel(self, client, store):
        response = client.post("/api/channels", json={"name": "Nope"}, headers=WRITER)

        assert response.status_code == 403
        assert store.channels == []

    def test_blank_channel_name(self, client):
        assert client.post("/api/channels", json={"name": "  "}, headers=OWNER).status_code == 400

    def test_archive_channel(self, client, channel):
        assert client.patch(f"/api/channels/{channel.id}", json={"archived": True}, headers=WRITER).status_code == 403

        response = client.patch(f"/api/channels/{channel.id}", json={"archived": True}, headers=MANAGER)

        assert response.status_code == 200
        assert response.json()["channel"]["archived"] is True
        assert client.get("/api/channels", headers=MANAGER).json()["count"] == 0
        assert client.get("/api/channels?include_archived=true", headers=MANAGER).json()["count"] == 1

    def test_delete_channel_is_owner_only(self, client, store, channel, task):
        assert client.delete(f"/api/channels/{channel.id}", headers=MANAGER).status_code == 403

        response = client.delete(f"/api/channels/{channel.id}", headers=OWNER)

        assert response.status_code == 200
        assert store.get_task(task.id) is None
        assert client.get(f"/api/channels/{channel.id}", headers=OWNER).status_code == 404

    def test_unknown_channel(self, client):
        assert client.patch("/api/channels/ghost", json={"archived": True}, headers=OWNER).status_code == 404
        assert client.delete("/api/channels/ghost", headers=OWNER).status_code == 404
        assert client.post("/api/channels/ghost/columns", json={"name": "X"}, headers=OWNER).status_code == 404

    def test_add_and_rename_column(self, client, channel):
        added = client.post(f"/api/channels/{channel.id}/columns", json={"name": "Final Review"}, headers=MANAGER)
        assert added.status_code == 201
        assert added.json()["channel"]["columns"][-1] == {"id": "final-review", "name": "Final Review", "order": 2}

        renamed = client.patch(
            f"/api/channels/{channel.id}/columns/audio",
            json={"name": "Voice Over"},
            headers=MANAGER,
        )
        assert renamed.status_code == 200
        names = {c["id"]: c["name"] for c in renamed.json()["channel"]["columns"]}
        assert names["audio"] == "Voice Over"

    def test_rename_unknown_column(self, client, channel):
        response = client.patch(f"/api/channels/{channel.id}/columns/ghost", json={"name": "X"}, headers=MANAGER)

        assert response.status_code == 400

    def test_reorder_columns(self, client, store, channel):
        response = client.put(
            f"/api/channels/{channel.id}/columns",
            json={"columns": [{"id": "audio", "name": "Audio"}, {"id": "script", "name": "Script"}]},
            headers=MANAGER,
        )

        assert response.status_code == 200
        assert store.get_channel(channel.id).next_column("audio").id == "script"

    def test_cannot_drop_column_holding_tasks(self, client, store, channel, task):
        response = client.put(
            f"/api/channels/{channel.id}/columns",
            json={"columns": [{"id": "audio", "name": "Audio"}]},
            headers=MANAGER,
        )

        assert response.status_code == 400
        assert len(store.get_channel(channel.id).columns) == 2

    def test_duplicate_column_ids(self, client, channel):
        response = client.put(
            f"/api/channels/{channel.id}/columns",
            json={"columns": [{"id": "script", "name": "A"}, {"id": "script", "name": "B"}, {"id": "audio", "name": "C"}]},
            headers=MANAGER,
        )

        assert response.status_code == 400

    def test_writer_cannot_edit_columns(self, client, channel):
        response = client.post(f"/api/channels/{channel.id}/columns", json={"name": "X"}, headers=WRITER)

        assert response.status_code == 403

    def test_custom_field_lifecycle(self, client, store, channel):
        created = client.post(
            f"/api/channels/{channel.id}/fields",
            json={
                "name": "Thumbnail",
                "type": "link",
                "required_in_columns": ["audio"],
                "permissions": {"editable_by_roles": ["audio_editor"]},
            },
            headers=MANAGER,
        )
        assert created.status_code == 201
        field = created.json()["field"]
        assert field["requiredInColumns"] == ["audio"]
        assert field["permissions"]["editableByRoles"] == ["audio_editor"]

        updated = client.patch(
            f"/api/channels/{channel.id}/fields/{field['id']}",
            json={"type": "text", "show_on_card_front": True},
            headers=MANAGER,
        )
        assert updated.status_code == 200
        assert updated.json()["field"]["type"] == "text"
        assert updated.json()["field"]["requiredInColumns"] == ["audio"]

        removed = client.delete(f"/api/channels/{channel.id}/fields/{field['id']}", headers=MANAGER)
        assert removed.status_code == 200
        assert store.get_channel(channel.id).get_custom_field(field["id"]) is None

    def test_custom_field_unknown_column(self, client, channel):
        response = client.patch(
            f"/api/channels/{channel.id}/fields/video-link",
            json={"required_in_columns": ["nope"]},
            headers=MANAGER,
        )

        assert response.status_code == 400

    def test_custom_field_bad_type(self, client, channel):
        response = client.post(
            f"/api/channels/{channel.id}/fields",
            json={"name": "Mood", "type": "colour"},
            headers=MANAGER,
        )

        assert response.status_code == 422

    def test_membership(self, client, store, channel):
        added = client.post(f"/api/channels/{channel.id}/members", json={"user_id": "new-1"}, headers=MANAGER)
        assert added.status_code == 200
        assert "new-1" in added.json()["channel"]["members"]

        removed = client.delete(f"/api/channels/{channel.id}/members/writer-1", headers=MANAGER)
        assert removed.status_code == 200
        assert store.get_channel(channel.id).assignment_for("script").assigned_user_ids == []
        assert client.get(f"/api/channels/{channel.id}", headers=WRITER).status_code == 403

    def test_set_manager_is_owner_only(self, client, channel):
        body = {"manager_id": "writer-1"}
        assert client.put(f"/api/channels/{channel.id}/manager", json=body, headers=MANAGER).status_code == 403

        response = client.put(f"/api/channels/{channel.id}/manager", json=body, headers=OWNER)

        assert response.status_code == 200
        assert response.json()["channel"]["managerId"] == "writer-1"

    def test_column_assignment(self, client, store, channel):
        response = client.put(
            f"/api/channels/{channel.id}/columns/script/assignment",
            json={"user_ids": ["writer-2"], "roles": ["script_writer"]},
            headers=MANAGER,
        )

        assert response.status_code == 200
        assignment = store.get_channel(channel.id).assignment_for("script")
        assert assignment.assigned_user_ids == ["writer-2"]
        assert assignment.assigned_roles == ["script_writer"]


# -----------------------------------------------------------------------------
# Task Editing Tests
# -----------------------------------------------------------------------------
class TestTaskEditing:

    def test_update_details(self, client, task):
        response = client.patch(
            f"/api/tasks/{task.id}",
            json={"title": "iPhone 16 Review", "notes": ["check pricing"]},
            headers=WRITER,
        )

        assert response.status_code == 200
        data = response.json()["task"]
        assert data["title"] == "iPhone 16 Review"
        assert data["notes"] == ["check pricing"]
        assert data["columnId"] == "script"

    def test_blank_title(self, client, task):
        assert client.patch(f"/api/tasks/{task.id}", json={"title": " "}, headers=WRITER).status_code == 400

    def test_outsider_cannot_update(self, client, task):
        assert client.patch(f"/api/tasks/{task.id}", json={"title": "x"}, headers=OUTSIDER).status_code == 403

    def test_delete_is_manager_only(self, client, store, task):
        assert client.delete(f"/api/tasks/{task.id}", headers=WRITER).status_code == 403

        response = client.delete(f"/api/tasks/{task.id}", headers=MANAGER)

        assert response.status_code == 200
        assert store.get_task(task.id) is None
        assert store.completed_tasks == ()

    def test_delete_unknown_task(self, client):
        assert client.delete("/api/tasks/ghost", headers=OWNER).status_code == 404
