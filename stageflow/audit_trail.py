"""
Audit & Archival

Append-only stage history and write-once finalization snapshots.

CONSTRAINTS:
- StageEvents are appended, never edited or removed
- CompletedTask snapshots copy channel and column names so later renames do
  not rewrite history
- Read operations never modify state
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from .entity_store import EntityStore
from .field_values import utc_now
from .pipeline_model import (
    Channel,
    CompletedTask,
    StageEvent,
    StageEventType,
    Task,
)

logger = logging.getLogger("audit_trail")


@dataclass(frozen=True)
class FinalLinks:
    """Deliverable links attached to a task when it is finalized."""
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    script_url: Optional[str] = None
    audio_url: Optional[str] = None
    other_links: List[str] = field(default_factory=list)


def build_completed_task(
    task: Task,
    channel: Channel,
    completed_by: str,
    final_links: Optional[FinalLinks] = None,
) -> CompletedTask:
    """
    Derive the archival snapshot of ``task`` as it stands now.

    Pure: the returned record has an empty id; the store assigns one when it
    is archived.
    """
    links = final_links or FinalLinks()
    column = channel.get_column(task.column_id)
    return CompletedTask(
        id="",
        task_id=task.id,
        title=task.title,
        description=task.description,
        channel_id=channel.id,
        channel_name=channel.name,
        column_id=task.column_id,
        column_name=column.name if column else "",
        assigned_to=task.assigned_to,
        assignees=[task.assigned_to] if task.assigned_to else [],
        due_date=task.due_date,
        completed_at=utc_now(),
        completed_by=completed_by,
        created_by=completed_by,
        task_created_at=task.created_at,
        custom_field_values=dict(task.custom_field_values),
        notes=list(task.notes),
        links=list(task.links),
        video_url=links.video_url or None,
        thumbnail_url=links.thumbnail_url or None,
        script_url=links.script_url or None,
        audio_url=links.audio_url or None,
        other_links=[l.strip() for l in links.other_links if l and l.strip()],
    )


class AuditTrail:
    """Writes and queries the stage history held by an EntityStore."""

    def __init__(self, store: EntityStore):
        self._store = store

    # -------------------------------------------------------------------------
    # Write Operations (Append-Only)
    # -------------------------------------------------------------------------

    def record_stage_event(
        self,
        task: Task,
        actor_user_id: str,
        from_column_id: str,
        to_column_id: str,
        event_type: StageEventType,
    ) -> StageEvent:
        event = self._store.add_stage_event(
            task_id=task.id,
            channel_id=task.channel_id,
            actor_user_id=actor_user_id,
            from_column_id=from_column_id,
            to_column_id=to_column_id,
            event_type=event_type,
        )
        logger.debug(f"Stage event {event.event_type.value} for task {task.id} by {actor_user_id}")
        return event

    def archive(
        self,
        task: Task,
        channel: Channel,
        completed_by: str,
        final_links: Optional[FinalLinks] = None,
    ) -> CompletedTask:
        """Snapshot ``task`` and append the snapshot to the completed tasks."""
        return self._store.add_completed_task(
            build_completed_task(task, channel, completed_by, final_links)
        )

    # -------------------------------------------------------------------------
    # Read Operations (Read-Only)
    # -------------------------------------------------------------------------

    def events_for_task(self, task_id: str) -> List[StageEvent]:
        events = [e for e in self._store.stage_events if e.task_id == task_id]
        return sorted(events, key=lambda e: e.occurred_at)

    def events_for_channel(self, channel_id: str, limit: int = 100) -> List[StageEvent]:
        events = [e for e in self._store.stage_events if e.channel_id == channel_id]
        events.sort(key=lambda e: e.occurred_at)
        return events[-limit:]

    def stage_history(self, task_id: str) -> List[str]:
        """Column ids the task has passed through, in order."""
        path: List[str] = []
        for event in self.events_for_task(task_id):
            if not path:
                path.append(event.from_column_id)
            if event.to_column_id != path[-1]:
                path.append(event.to_column_id)
        return path

    def completed_task_for(self, task_id: str) -> Optional[CompletedTask]:
        for record in self._store.completed_tasks:
            if record.task_id == task_id:
                return record
        return None

    def completed_tasks_for_channel(self, channel_id: str) -> List[CompletedTask]:
        return [r for r in self._store.completed_tasks if r.channel_id == channel_id]

    def get_summary(
        self,
        channel_id: Optional[str] = None,
        since_hours: int = 24,
    ) -> Dict[str, Any]:
        """
        Count stage activity over a trailing window.

        Args:
            channel_id: Optional filter by channel
            since_hours: Hours to look back

        Returns:
            Summary dictionary
        """
        cutoff = utc_now() - timedelta(hours=since_hours)

        stages_completed = 0
        finalized = 0
        by_actor: Dict[str, int] = {}
        by_column: Dict[str, int] = {}

        for event in self._store.stage_events:
            if event.occurred_at < cutoff:
                continue
            if channel_id and event.channel_id != channel_id:
                continue

            if event.event_type == StageEventType.STAGE_COMPLETED:
                stages_completed += 1
                by_column[event.from_column_id] = by_column.get(event.from_column_id, 0) + 1
            elif event.event_type == StageEventType.FINALIZED:
                finalized += 1

            if event.actor_user_id:
                by_actor[event.actor_user_id] = by_actor.get(event.actor_user_id, 0) + 1

        return {
            "generated_at": utc_now().isoformat(),
            "since_hours": since_hours,
            "channel_id": channel_id,
            "stages_completed": stages_completed,
            "finalized": finalized,
            "by_actor": by_actor,
            "by_column": by_column,
        }
