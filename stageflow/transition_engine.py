"""
Stage-Transition Engine

Moves a task to the next column of its channel, or finalizes it when it sits
in the terminal column.

States: one per column of the task's channel, plus an implicit "completed"
state reachable only from the last column.

Protocol for ``advance``:
1. Resolve task, channel and current column (unknown ids raise
   InvalidReferenceError; nothing is mutated)
2. Guard: any missing mandatory field rejects the transition with no
   mutation and no audit record
3. Non-terminal: move to the next column, refresh ``updated_at``, append a
   ``stage_completed`` event (from=current, to=next)
4. Terminal: append a ``finalized`` event (from=to=current), archive a
   CompletedTask snapshot, remove the task from the active set

Steps 2-4 run inside one store transaction, so no observer sees a moved task
without its event and a failure part-way leaves nothing behind.

``advance`` is not idempotent: two successful calls are two transitions.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from . import config
from .audit_trail import AuditTrail, FinalLinks
from .entity_store import EntityStore
from .errors import InvalidReferenceError
from .pipeline_model import (
    Channel,
    Column,
    CompletedTask,
    CustomField,
    StageEvent,
    StageEventType,
    Task,
)
from .validation_engine import missing_required_fields

logger = logging.getLogger("transition_engine")


class AdvanceOutcome(str, Enum):
    """Result of a single advance attempt."""
    ADVANCED = "advanced"
    FINALIZED = "finalized"
    MISSING_REQUIRED_FIELDS = "missing_required_fields"


@dataclass(frozen=True)
class AdvanceResult:
    """
    Outcome of ``StageTransitionEngine.advance``.

    A rejection carries the blocking fields and nothing else; a success
    carries the event it appended and, on finalization, the snapshot.
    """
    outcome: AdvanceOutcome
    task_id: str
    message: str
    new_column_id: Optional[str] = None
    missing_fields: Tuple[CustomField, ...] = ()
    stage_event: Optional[StageEvent] = None
    completed_task: Optional[CompletedTask] = None

    @property
    def success(self) -> bool:
        return self.outcome != AdvanceOutcome.MISSING_REQUIRED_FIELDS

    @property
    def finalized(self) -> bool:
        return self.outcome == AdvanceOutcome.FINALIZED

    @property
    def missing_field_names(self) -> List[str]:
        return [f.name for f in self.missing_fields]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "task_id": self.task_id,
            "message": self.message,
            "new_column_id": self.new_column_id,
            "missing_fields": self.missing_field_names,
            "stage_event_id": self.stage_event.id if self.stage_event else None,
            "completed_task_id": self.completed_task.id if self.completed_task else None,
        }


@dataclass(frozen=True)
class AdvancePreview:
    """What ``advance`` would do right now, without doing it."""
    task_id: str
    current_column: Column
    next_column: Optional[Column]
    missing_fields: List[CustomField] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.next_column is None

    @property
    def can_advance(self) -> bool:
        return not self.missing_fields


class StageTransitionEngine:
    """Atomic advance-or-finalize over the tasks of an EntityStore."""

    def __init__(
        self,
        store: EntityStore,
        audit: Optional[AuditTrail] = None,
        reassign_on_advance: Optional[bool] = None,
    ):
        """
        Args:
            store: The process's entity store
            audit: Audit trail writing into the same store (built if omitted)
            reassign_on_advance: Hand the task to the first user assigned to
                the next column (defaults to STAGEFLOW_REASSIGN_ON_ADVANCE)
        """
        self._store = store
        self._audit = audit or AuditTrail(store)
        self._reassign = config.REASSIGN_ON_ADVANCE if reassign_on_advance is None else reassign_on_advance

    # -------------------------------------------------------------------------
    # Context resolution
    # -------------------------------------------------------------------------

    def _resolve(self, task_id: str) -> Tuple[Task, Channel, Column]:
        task = self._store.require_task(task_id)
        channel = self._store.require_channel(task.channel_id)
        column = channel.get_column(task.column_id)
        if column is None:
            logger.error(f"Task {task.id} sits in unknown column {task.column_id} of channel {channel.id}")
            raise InvalidReferenceError("column", task.column_id, f"not in channel {channel.id}")
        return task, channel, column

    def preview(self, task_id: str) -> AdvancePreview:
        task, channel, column = self._resolve(task_id)
        return AdvancePreview(
            task_id=task.id,
            current_column=column,
            next_column=channel.next_column(column.id),
            missing_fields=missing_required_fields(task, channel),
        )

    # -------------------------------------------------------------------------
    # Advance
    # -------------------------------------------------------------------------

    def advance(
        self,
        task_id: str,
        actor_user_id: str,
        final_links: Optional[FinalLinks] = None,
    ) -> AdvanceResult:
        """
        Advance a task one stage, or finalize it from the terminal column.

        Args:
            task_id: Task to move
            actor_user_id: User performing the action (recorded on the event)
            final_links: Deliverable links stored on the snapshot when the
                task is finalized

        Returns:
            AdvanceResult; MISSING_REQUIRED_FIELDS leaves the task untouched

        Raises:
            InvalidReferenceError: task, channel or column does not resolve
        """
        with self._store.transaction():
            task, channel, column = self._resolve(task_id)

            missing = missing_required_fields(task, channel)
            if missing:
                names = ", ".join(f.name for f in missing)
                logger.info(f"Advance rejected for task {task.id} in {column.id}: missing {names}")
                return AdvanceResult(
                    outcome=AdvanceOutcome.MISSING_REQUIRED_FIELDS,
                    task_id=task.id,
                    message=f"Please complete: {names}",
                    missing_fields=tuple(missing),
                )

            next_column = channel.next_column(column.id)
            if next_column is None:
                return self._finalize(task, channel, column, actor_user_id, final_links)
            return self._move(task, channel, column, next_column, actor_user_id)

    def _move(
        self,
        task: Task,
        channel: Channel,
        column: Column,
        next_column: Column,
        actor_user_id: str,
    ) -> AdvanceResult:
        updates: Dict[str, Any] = {"column_id": next_column.id}
        if self._reassign:
            assignment = channel.assignment_for(next_column.id)
            updates["assigned_to"] = (
                assignment.assigned_user_ids[0]
                if assignment and assignment.assigned_user_ids else None
            )

        moved = self._store.update_task(task.id, **updates)
        event = self._audit.record_stage_event(
            task=moved,
            actor_user_id=actor_user_id,
            from_column_id=column.id,
            to_column_id=next_column.id,
            event_type=StageEventType.STAGE_COMPLETED,
        )

        logger.info(f"Task {task.id}: {column.id} -> {next_column.id} (by: {actor_user_id})")
        return AdvanceResult(
            outcome=AdvanceOutcome.ADVANCED,
            task_id=task.id,
            message=f"Moved to {next_column.name}",
            new_column_id=next_column.id,
            stage_event=event,
        )

    def _finalize(
        self,
        task: Task,
        channel: Channel,
        column: Column,
        actor_user_id: str,
        final_links: Optional[FinalLinks],
    ) -> AdvanceResult:
        event = self._audit.record_stage_event(
            task=task,
            actor_user_id=actor_user_id,
            from_column_id=column.id,
            to_column_id=column.id,
            event_type=StageEventType.FINALIZED,
        )
        snapshot = self._audit.archive(task, channel, actor_user_id, final_links)
        self._store.delete_task(task.id)

        logger.info(f"Task {task.id} finalized in {channel.name}/{column.name} (by: {actor_user_id})")
        return AdvanceResult(
            outcome=AdvanceOutcome.FINALIZED,
            task_id=task.id,
            message=f"Finalized in {column.name}",
            stage_event=event,
            completed_task=snapshot,
        )
