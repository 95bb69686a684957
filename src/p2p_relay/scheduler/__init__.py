"""Task-orchestration engine: triggers, worker pool and snapshot persistence."""

from p2p_relay.scheduler.engine import SchedulerEngine
from p2p_relay.scheduler.models import (
    DuplicateTaskError,
    EngineState,
    EngineStateError,
    TaskCompleted,
    TaskContext,
    TaskFailed,
    TaskKind,
    TaskState,
    TaskTimeoutError,
    TaskView,
)
from p2p_relay.scheduler.snapshot import SnapshotError, SnapshotStore

__all__ = [
    "DuplicateTaskError",
    "EngineState",
    "EngineStateError",
    "SchedulerEngine",
    "SnapshotError",
    "SnapshotStore",
    "TaskCompleted",
    "TaskContext",
    "TaskFailed",
    "TaskKind",
    "TaskState",
    "TaskTimeoutError",
    "TaskView",
]
