"""Task, trigger and event types for the scheduling engine."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EngineState(str, Enum):
    STOPPED = "stopped"
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"


class TaskState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TaskKind(str, Enum):
    ONE_TIME = "one_time"
    INTERVAL = "interval"
    CRON = "cron"
    CONDITIONAL = "conditional"


class EngineStateError(RuntimeError):
    """Operation is not valid in the current engine state."""

    def __init__(self, operation: str, state: EngineState) -> None:
        super().__init__(f"Cannot {operation} engine in state {state.value}")
        self.operation = operation
        self.state = state


class DuplicateTaskError(ValueError):
    """A task with the same id is already registered."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task already registered: {task_id}")
        self.task_id = task_id


class TaskTimeoutError(TimeoutError):
    """A handler ran longer than its timeout; its eventual result is discarded."""

    def __init__(self, task_id: str, timeout_seconds: float) -> None:
        super().__init__(f"Task {task_id} timed out after {timeout_seconds:g}s")
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds


@dataclass(slots=True, frozen=True)
class OneTimeTrigger:
    kind: TaskKind = field(default=TaskKind.ONE_TIME, init=False)


@dataclass(slots=True, frozen=True)
class IntervalTrigger:
    period_seconds: float
    kind: TaskKind = field(default=TaskKind.INTERVAL, init=False)


@dataclass(slots=True, frozen=True)
class CronTrigger:
    expression: str
    kind: TaskKind = field(default=TaskKind.CRON, init=False)


@dataclass(slots=True, frozen=True)
class ConditionalTrigger:
    predicate: TaskPredicate
    poll_seconds: float
    kind: TaskKind = field(default=TaskKind.CONDITIONAL, init=False)


Trigger = OneTimeTrigger | IntervalTrigger | CronTrigger | ConditionalTrigger


@dataclass(slots=True)
class TaskContext:
    """What a handler sees while it runs.

    ``shared`` is the engine-wide context dict. By convention a handler only
    writes keys it owns (usually prefixed with its task id); the engine does not
    lock individual keys.
    """

    task_id: str
    shared: dict[str, Any]
    run_count: int
    last_run_at: datetime | None
    cancel_event: threading.Event

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


TaskHandler = Callable[[TaskContext], Any]
TaskPredicate = Callable[[TaskContext], bool]


@dataclass(slots=True)
class ScheduledTask:
    """Registered task together with its mutable scheduling metadata."""

    task_id: str
    trigger: Trigger
    handler: TaskHandler
    run_on_start: bool = False
    timeout_seconds: float | None = None
    state: TaskState = TaskState.IDLE
    enabled: bool = True
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    run_count: int = 0
    last_error: str | None = None

    @property
    def kind(self) -> TaskKind:
        return self.trigger.kind


@dataclass(slots=True, frozen=True)
class TaskView:
    """Read-only copy of task metadata for callers outside the engine."""

    task_id: str
    kind: TaskKind
    state: TaskState
    enabled: bool
    next_run_at: datetime | None
    last_run_at: datetime | None
    run_count: int
    last_error: str | None


@dataclass(slots=True, frozen=True)
class TaskCompleted:
    task_id: str
    result: Any
    finished_at: datetime


@dataclass(slots=True, frozen=True)
class TaskFailed:
    task_id: str
    error: BaseException
    finished_at: datetime
