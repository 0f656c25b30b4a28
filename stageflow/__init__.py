"""
Stageflow

Stage-transition engine for multi-channel content-production pipelines.
Each channel runs tasks through an ordered set of columns (Script, Audio,
Edit, QA, Upload by default).

- Mandatory custom fields gate a task from leaving its current column
- Field-level edit permissions by role, user or column responsibility
- Atomic advance: move, reassign and record a stage event in one step
- Finalization from the last column archives a CompletedTask snapshot
- Write-through persistence of every collection to a key-value boundary
"""

__version__ = "1.0.0"

from .audit_trail import AuditTrail, FinalLinks
from .channel_service import ChannelService
from .entity_store import EntityStore
from .errors import (
    ChannelConfigError,
    FieldValueError,
    InvalidReferenceError,
    StageflowError,
)
from .pipeline_model import ActingUser
from .storage_port import FileKeyValueStore, InMemoryKeyValueStore
from .task_service import TaskService
from .transition_engine import AdvanceOutcome, AdvanceResult, StageTransitionEngine

__all__ = [
    "__version__",
    "ActingUser",
    "AdvanceOutcome",
    "AdvanceResult",
    "AuditTrail",
    "ChannelConfigError",
    "ChannelService",
    "EntityStore",
    "FieldValueError",
    "FileKeyValueStore",
    "FinalLinks",
    "InMemoryKeyValueStore",
    "InvalidReferenceError",
    "StageflowError",
    "StageTransitionEngine",
    "TaskService",
]
