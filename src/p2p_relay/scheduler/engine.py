"""Tick-driven task scheduler with a bounded worker pool."""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from apscheduler.triggers.cron import CronTrigger as _CronSchedule

from p2p_relay.scheduler.models import (
    ConditionalTrigger,
    CronTrigger,
    DuplicateTaskError,
    EngineState,
    EngineStateError,
    IntervalTrigger,
    OneTimeTrigger,
    ScheduledTask,
    TaskCompleted,
    TaskContext,
    TaskFailed,
    TaskHandler,
    TaskKind,
    TaskPredicate,
    TaskState,
    TaskTimeoutError,
    TaskView,
)
from p2p_relay.scheduler.snapshot import (
    SchedulerSnapshot,
    SnapshotError,
    SnapshotStore,
    TaskSnapshot,
)
from p2p_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

CompletedCallback = Callable[[TaskCompleted], None]
FailedCallback = Callable[[TaskFailed], None]

_SNAPSHOT_ATTEMPTS = 3


@dataclass(slots=True, frozen=True)
class _Run:
    task_id: str
    token: int
    started_at: datetime


class SchedulerEngine:
    """Runs registered tasks on their triggers.

    A single dispatcher thread evaluates triggers every ``tick_seconds`` and puts
    ready tasks on a FIFO admission queue. At most ``max_concurrent_tasks``
    handlers run at once on a thread pool. A task that is queued or running is
    never queued again by its own trigger, so a task id never overlaps itself.

    A run that outlives its timeout (the task's own, else
    ``default_timeout_seconds``) is reported as failed and its slot is handed to
    the next queued task. Whatever the handler returns afterwards is discarded.

    Scheduling metadata and the shared context are written to ``state_path``
    on every checkpoint, on :meth:`pause` and on :meth:`stop`, and read back by
    :meth:`initialize`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        name: str,
        context: dict[str, Any] | None = None,
        state_path: Path | None = None,
        max_concurrent_tasks: int = 5,
        checkpoint_interval_seconds: float = 30.0,
        shutdown_grace_seconds: float = 5.0,
        tick_seconds: float = 0.05,
        default_timeout_seconds: float | None = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_concurrent_tasks <= 0:
            raise ValueError("max_concurrent_tasks must be a positive integer")
        if default_timeout_seconds is not None and default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0 or None")
        self.name = name
        self.max_concurrent_tasks = max_concurrent_tasks
        self.checkpoint_interval_seconds = checkpoint_interval_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.tick_seconds = tick_seconds
        self.default_timeout_seconds = default_timeout_seconds
        self._clock = clock
        self._store = SnapshotStore(state_path) if state_path is not None else None
        self._context: dict[str, Any] = dict(context or {})

        self._lock = threading.RLock()
        self._state = EngineState.STOPPED
        self._initialized = False
        self._one_time: dict[str, ScheduledTask] = {}
        self._tasks: dict[str, ScheduledTask] = {}
        self._cron_schedules: dict[str, _CronSchedule] = {}
        self._admission: deque[str] = deque()
        self._running: dict[int, tuple[_Run, Future[None]]] = {}
        self._abandoned: set[int] = set()
        self._timed_out: dict[int, str] = {}
        self._deadlines: dict[int, float] = {}
        self._tokens = itertools.count(1)

        self._cancel_event = threading.Event()
        self._halt = threading.Event()
        self._wakeup = threading.Event()
        self._dispatcher: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._last_checkpoint_at: float = 0.0

        self._completed_subscribers: list[CompletedCallback] = []
        self._failed_subscribers: list[FailedCallback] = []

    # -- registration ----------------------------------------------------------

    def register_one_time(self, name: str, handler: TaskHandler) -> None:
        """Register a task that runs once inside :meth:`initialize`."""

        with self._lock:
            if self._state is not EngineState.STOPPED:
                raise EngineStateError("register one-time task on", self._state)
            self._ensure_unique(name)
            self._one_time[name] = ScheduledTask(
                task_id=name,
                trigger=OneTimeTrigger(),
                handler=handler,
            )

    def register_interval(
        self,
        task_id: str,
        handler: TaskHandler,
        period_seconds: float,
        *,
        run_on_start: bool = False,
        timeout_seconds: float | None = None,
    ) -> None:
        if period_seconds <= 0:
            raise ValueError(f"Interval for {task_id} must be > 0, got {period_seconds}")
        self._register(
            ScheduledTask(
                task_id=task_id,
                trigger=IntervalTrigger(period_seconds=period_seconds),
                handler=handler,
                run_on_start=run_on_start,
                timeout_seconds=_checked_timeout(task_id, timeout_seconds),
            ),
        )

    def register_cron(
        self,
        task_id: str,
        handler: TaskHandler,
        expression: str,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        """Register a 5-field crontab task evaluated in the local time zone."""

        schedule = _CronSchedule.from_crontab(expression)
        task = ScheduledTask(
            task_id=task_id,
            trigger=CronTrigger(expression=expression),
            handler=handler,
            timeout_seconds=_checked_timeout(task_id, timeout_seconds),
        )
        with self._lock:
            self._ensure_unique(task_id)
            self._cron_schedules[task_id] = schedule
            self._register(task)

    def register_conditional(  # noqa: PLR0913
        self,
        task_id: str,
        handler: TaskHandler,
        predicate: TaskPredicate,
        poll_seconds: float,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        """Register a task fired whenever ``predicate(ctx)`` holds on a poll.

        The predicate runs on the dispatcher thread with the same
        :class:`TaskContext` a handler would get, so it can read the shared context.
        """

        if poll_seconds <= 0:
            raise ValueError(f"Poll interval for {task_id} must be > 0, got {poll_seconds}")
        self._register(
            ScheduledTask(
                task_id=task_id,
                trigger=ConditionalTrigger(predicate=predicate, poll_seconds=poll_seconds),
                handler=handler,
                timeout_seconds=_checked_timeout(task_id, timeout_seconds),
            ),
        )

    def _register(self, task: ScheduledTask) -> None:
        with self._lock:
            self._ensure_unique(task.task_id)
            if self._initialized:
                task.next_run_at = self._initial_next_run(task, self._clock())
            self._tasks[task.task_id] = task
        self._wakeup.set()

    def _ensure_unique(self, task_id: str) -> None:
        if task_id in self._tasks or task_id in self._one_time:
            raise DuplicateTaskError(task_id)

    # -- events ----------------------------------------------------------------

    def on_task_completed(self, callback: CompletedCallback) -> Callable[[], None]:
        with self._lock:
            self._completed_subscribers.append(callback)
        return lambda: self._unsubscribe(self._completed_subscribers, callback)

    def on_task_error(self, callback: FailedCallback) -> Callable[[], None]:
        with self._lock:
            self._failed_subscribers.append(callback)
        return lambda: self._unsubscribe(self._failed_subscribers, callback)

    def _unsubscribe(self, subscribers: list[Any], callback: Any) -> None:
        with self._lock:
            if callback in subscribers:
                subscribers.remove(callback)

    def _emit(self, event: TaskCompleted | TaskFailed) -> None:
        with self._lock:
            if isinstance(event, TaskCompleted):
                subscribers: list[Any] = list(self._completed_subscribers)
            else:
                subscribers = list(self._failed_subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber failed for task %s event", event.task_id)

    # -- public state ----------------------------------------------------------

    @property
    def state(self) -> EngineState:
        with self._lock:
            return self._state

    @property
    def context(self) -> dict[str, Any]:
        """Copy of the shared context."""

        with self._lock:
            return copy.deepcopy(self._context)

    def update_context(self, patch: dict[str, Any]) -> None:
        with self._lock:
            self._context.update(patch)

    def tasks(self) -> list[TaskView]:
        with self._lock:
            items = [*self._one_time.values(), *self._tasks.values()]
            return [_to_task_view(task) for task in items]

    def task(self, task_id: str) -> TaskView:
        with self._lock:
            return _to_task_view(self._get_task(task_id))

    def set_task_enabled(self, task_id: str, enabled: bool) -> None:
        with self._lock:
            task = self._get_task(task_id)
            task.enabled = enabled
            if enabled and task.next_run_at is None and self._initialized:
                task.next_run_at = self._initial_next_run(task, self._clock())
        logger.info("Task %s %s", task_id, "enabled" if enabled else "disabled")
        self._wakeup.set()

    def trigger(self, task_id: str) -> None:
        """Make a recurring task due on the next tick."""

        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise KeyError(task_id)
            task.next_run_at = self._clock()
        self._wakeup.set()

    def wait_until_idle(self, timeout: float) -> bool:
        """Block until nothing is queued or running, or ``timeout`` elapses."""

        deadline = time.monotonic() + timeout
        while True:
            with self._lock:
                idle = not self._admission and not self._running
                due = any(
                    task.enabled
                    and task.next_run_at is not None
                    and task.next_run_at <= self._clock()
                    and self._state is EngineState.RUNNING
                    for task in self._tasks.values()
                )
            if idle and not due:
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(min(self.tick_seconds, 0.05))

    def _get_task(self, task_id: str) -> ScheduledTask:
        task = self._tasks.get(task_id) or self._one_time.get(task_id)
        if task is None:
            raise KeyError(task_id)
        return task

    # -- lifecycle -------------------------------------------------------------

    def initialize(self) -> None:
        """Restore the snapshot if present and run one-time tasks."""

        with self._lock:
            if self._state is not EngineState.STOPPED:
                raise EngineStateError("initialize", self._state)
            self._state = EngineState.INITIALIZING
            self._cancel_event.clear()

        try:
            snapshot = self._store.load() if self._store is not None else None
        except SnapshotError:
            with self._lock:
                self._state = EngineState.STOPPED
            raise

        now = self._clock()
        with self._lock:
            if snapshot is not None:
                self._apply_snapshot(snapshot)
            for task in self._tasks.values():
                if task.next_run_at is None:
                    task.next_run_at = self._initial_next_run(task, now)
            pending_one_time = [task for task in self._one_time.values() if task.enabled]

        for task in pending_one_time:
            self._run_one_time(task)

        with self._lock:
            self._initialized = True
        logger.info(
            "Scheduler %s initialized: %d recurring task(s), %d one-time task(s) run",
            self.name,
            len(self._tasks),
            len(pending_one_time),
        )

    def start(self) -> None:
        with self._lock:
            if self._state is EngineState.PAUSED:
                self._state = EngineState.RUNNING
                logger.info("Scheduler %s resumed", self.name)
                self._drain_admission()
                self._wakeup.set()
                return
            if self._state is not EngineState.INITIALIZING or not self._initialized:
                raise EngineStateError("start", self._state)

            self._cancel_event.clear()
            self._halt.clear()
            # timed-out handlers keep their thread until they return
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_concurrent_tasks * 2,
                thread_name_prefix=f"{self.name}-task",
            )
            self._last_checkpoint_at = time.monotonic()
            self._state = EngineState.RUNNING
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop,
                daemon=True,
                name=f"{self.name}-dispatcher",
            )
            self._dispatcher.start()
        logger.info(
            "Scheduler %s started (max_concurrent_tasks=%d)",
            self.name,
            self.max_concurrent_tasks,
        )

    def pause(self) -> None:
        """Stop admitting new runs; in-flight handlers keep running."""

        with self._lock:
            if self._state is not EngineState.RUNNING:
                raise EngineStateError("pause", self._state)
            self._state = EngineState.PAUSED
        logger.info("Scheduler %s paused", self.name)
        self._checkpoint()

    def stop(self) -> None:
        """Wait for in-flight handlers up to the grace period, then write a final snapshot."""

        with self._lock:
            if self._state is EngineState.STOPPED:
                return
            # no run is admitted once halt is set; _tick and _drain_admission check it
            self._halt.set()
            self._cancel_event.set()
            self._wakeup.set()
            dispatcher = self._dispatcher
            executor = self._executor

        if dispatcher is not None:
            dispatcher.join(timeout=max(1.0, self.tick_seconds * 4))

        with self._lock:
            for task_id in self._admission:
                queued = self._tasks.get(task_id)
                if queued is not None and queued.state is TaskState.SCHEDULED:
                    queued.state = TaskState.IDLE
            self._admission.clear()
            for token, task_id in self._timed_out.items():
                self._abandoned.add(token)
                late = self._tasks.get(task_id)
                if late is not None:
                    late.state = TaskState.IDLE
            self._timed_out.clear()
            in_flight = list(self._running.values())

        if in_flight:
            logger.info(
                "Scheduler %s waiting up to %.1fs for %d running task(s)",
                self.name,
                self.shutdown_grace_seconds,
                len(in_flight),
            )
            _, not_done = wait(
                [future for _, future in in_flight],
                timeout=self.shutdown_grace_seconds,
            )
            with self._lock:
                for run, future in in_flight:
                    if future not in not_done:
                        continue
                    self._abandoned.add(run.token)
                    self._running.pop(run.token, None)
                    task = self._tasks.get(run.task_id)
                    if task is not None:
                        task.state = TaskState.IDLE
                    logger.warning(
                        "Task %s still running after %.1fs grace, abandoning it",
                        run.task_id,
                        self.shutdown_grace_seconds,
                    )

        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

        with self._lock:
            self._state = EngineState.STOPPED
            self._initialized = False
            self._executor = None
            self._dispatcher = None
        self._checkpoint()
        logger.info("Scheduler %s stopped", self.name)

    # -- dispatcher ------------------------------------------------------------

    def _dispatch_loop(self) -> None:
        while not self._halt.is_set():
            try:
                self._tick()
            except Exception:
                logger.exception("Scheduler %s tick failed", self.name)
            self._wakeup.wait(timeout=self.tick_seconds)
            self._wakeup.clear()

    def _tick(self) -> None:
        self._expire_overdue_runs()
        now = self._clock()
        with self._lock:
            if not self._admitting():
                due: list[ScheduledTask] = []
            else:
                due = sorted(
                    (
                        task
                        for task in self._tasks.values()
                        if task.enabled
                        and task.state is TaskState.IDLE
                        and task.next_run_at is not None
                        and task.next_run_at <= now
                    ),
                    key=lambda task: task.next_run_at or now,
                )

        for task in due:
            fire = True
            if isinstance(task.trigger, ConditionalTrigger):
                fire = self._evaluate_predicate(task, task.trigger)
            with self._lock:
                if not self._admitting() or task.state is not TaskState.IDLE:
                    continue
                task.next_run_at = self._next_run_after_fire(task, now)
                if not fire:
                    continue
                task.state = TaskState.SCHEDULED
                self._admission.append(task.task_id)

        with self._lock:
            self._drain_admission()

        if (
            self._store is not None
            and not self._halt.is_set()
            and time.monotonic() - self._last_checkpoint_at >= self.checkpoint_interval_seconds
        ):
            self._checkpoint()

    def _admitting(self) -> bool:
        return self._state is EngineState.RUNNING and not self._halt.is_set()

    def _evaluate_predicate(self, task: ScheduledTask, trigger: ConditionalTrigger) -> bool:
        try:
            return bool(trigger.predicate(self._task_context(task)))
        except Exception:
            logger.exception("Predicate for task %s failed, treating as false", task.task_id)
            return False

    def _task_context(self, task: ScheduledTask) -> TaskContext:
        return TaskContext(
            task_id=task.task_id,
            shared=self._context,
            run_count=task.run_count,
            last_run_at=task.last_run_at,
            cancel_event=self._cancel_event,
        )

    def _drain_admission(self) -> None:
        while (
            self._admission
            and self._executor is not None
            and self._admitting()
            and len(self._running) < self.max_concurrent_tasks
        ):
            task_id = self._admission.popleft()
            task = self._tasks.get(task_id)
            if task is None:
                continue
            if not task.enabled:
                task.state = TaskState.IDLE
                continue
            run = _Run(task_id=task_id, token=next(self._tokens), started_at=self._clock())
            task.state = TaskState.RUNNING
            future = self._executor.submit(self._execute, task, run, self._task_context(task))
            self._running[run.token] = (run, future)

    def _timeout_for(self, task: ScheduledTask) -> float | None:
        if task.timeout_seconds is not None:
            return task.timeout_seconds
        return self.default_timeout_seconds

    def _expire_overdue_runs(self) -> None:
        """Fail runs past their deadline and give their slot to the next queued task.

        The handler thread cannot be interrupted, so the task stays RUNNING until
        it returns; that keeps its own trigger from starting an overlapping run.
        """

        now = time.monotonic()
        expired: list[tuple[ScheduledTask, _Run, TaskTimeoutError]] = []
        with self._lock:
            for token, deadline in list(self._deadlines.items()):
                if now < deadline or token not in self._running:
                    continue
                run, _ = self._running.pop(token)
                del self._deadlines[token]
                task = self._tasks[run.task_id]
                error = TaskTimeoutError(run.task_id, self._timeout_for(task) or 0.0)
                self._timed_out[token] = run.task_id
                task.last_run_at = run.started_at
                task.run_count += 1
                task.last_error = str(error)
                expired.append((task, run, error))
            if expired:
                self._drain_admission()

        finished_at = self._clock()
        for task, _, error in expired:
            logger.error("%s, freeing its slot", error)
            self._emit(TaskFailed(task_id=task.task_id, error=error, finished_at=finished_at))

    def _execute(self, task: ScheduledTask, run: _Run, ctx: TaskContext) -> None:
        timeout = self._timeout_for(task)
        if timeout is not None:
            with self._lock:
                if run.token in self._running:
                    self._deadlines[run.token] = time.monotonic() + timeout
        result: Any = None
        error: BaseException | None = None
        try:
            result = task.handler(ctx)
        except Exception as exc:  # noqa: BLE001
            error = exc
        self._finish(task, run, result, error)

    def _finish(
        self,
        task: ScheduledTask,
        run: _Run,
        result: Any,
        error: BaseException | None,
    ) -> None:
        finished_at = self._clock()
        with self._lock:
            self._running.pop(run.token, None)
            self._deadlines.pop(run.token, None)
            if run.token in self._abandoned:
                self._abandoned.discard(run.token)
                logger.warning(
                    "Orphaned run of task %s finished after shutdown, result ignored",
                    run.task_id,
                )
                return
            if self._timed_out.pop(run.token, None) is not None:
                task.state = TaskState.IDLE
                logger.warning(
                    "Run of task %s finished after its timeout, result ignored",
                    run.task_id,
                )
                self._drain_admission()
                self._wakeup.set()
                return
            task.last_run_at = run.started_at
            task.run_count += 1
            if error is None:
                task.state = TaskState.SUCCEEDED
                task.last_error = None
            else:
                task.state = TaskState.FAILED
                task.last_error = str(error)

        if error is None:
            logger.debug("Task %s completed", task.task_id)
            self._emit(TaskCompleted(task_id=task.task_id, result=result, finished_at=finished_at))
        else:
            logger.error(
                "Task %s failed: %s",
                task.task_id,
                error,
                exc_info=(type(error), error, error.__traceback__),
            )
            self._emit(TaskFailed(task_id=task.task_id, error=error, finished_at=finished_at))

        with self._lock:
            if task.state in (TaskState.SUCCEEDED, TaskState.FAILED):
                task.state = TaskState.IDLE
            self._drain_admission()
        self._wakeup.set()

    def _run_one_time(self, task: ScheduledTask) -> None:
        started_at = self._clock()
        task.state = TaskState.RUNNING
        ctx = self._task_context(task)
        try:
            result = task.handler(ctx)
        except Exception as exc:  # noqa: BLE001
            with self._lock:
                task.state = TaskState.IDLE
                task.run_count += 1
                task.last_run_at = started_at
                task.last_error = str(exc)
            logger.exception("One-time task %s failed", task.task_id)
            self._emit(TaskFailed(task_id=task.task_id, error=exc, finished_at=self._clock()))
            return

        with self._lock:
            task.state = TaskState.IDLE
            task.run_count += 1
            task.last_run_at = started_at
            task.last_error = None
            task.enabled = False
        logger.info("One-time task %s completed", task.task_id)
        self._emit(TaskCompleted(task_id=task.task_id, result=result, finished_at=self._clock()))

    # -- trigger arithmetic ----------------------------------------------------

    def _initial_next_run(self, task: ScheduledTask, now: datetime) -> datetime | None:
        trigger = task.trigger
        if isinstance(trigger, IntervalTrigger):
            if task.run_on_start:
                return now
            return now + timedelta(seconds=trigger.period_seconds)
        if isinstance(trigger, CronTrigger):
            return self._next_cron_fire(task.task_id, now)
        if isinstance(trigger, ConditionalTrigger):
            return now + timedelta(seconds=trigger.poll_seconds)
        return None

    def _next_run_after_fire(self, task: ScheduledTask, now: datetime) -> datetime | None:
        trigger = task.trigger
        previous = task.next_run_at or now
        if isinstance(trigger, IntervalTrigger):
            period = timedelta(seconds=trigger.period_seconds)
            candidate = previous + period
            if candidate <= now:
                candidate = now + period
            return candidate
        if isinstance(trigger, CronTrigger):
            return self._next_cron_fire(task.task_id, max(now, previous + timedelta(seconds=1)))
        if isinstance(trigger, ConditionalTrigger):
            return now + timedelta(seconds=trigger.poll_seconds)
        return None

    def _next_cron_fire(self, task_id: str, after: datetime) -> datetime | None:
        schedule = self._cron_schedules[task_id]
        fire_at = schedule.get_next_fire_time(None, after.astimezone(schedule.timezone))
        if fire_at is None:
            return None
        return fire_at.astimezone(after.tzinfo)

    # -- persistence -----------------------------------------------------------

    def _apply_snapshot(self, snapshot: SchedulerSnapshot) -> None:
        self._context.update(snapshot.context)
        restored = 0
        for saved in snapshot.tasks:
            task = self._tasks.get(saved.task_id) or self._one_time.get(saved.task_id)
            if task is None or task.kind is not saved.kind:
                logger.info("Ignoring snapshot entry for unknown task %s", saved.task_id)
                continue
            task.last_run_at = saved.last_run_at
            task.enabled = saved.enabled
            if task.kind is not TaskKind.ONE_TIME:
                task.next_run_at = saved.next_run_at
            restored += 1
        logger.info(
            "Restored scheduler snapshot saved at %s (%d task(s))",
            snapshot.saved_at.isoformat(),
            restored,
        )

    def _build_snapshot(self) -> SchedulerSnapshot:
        return SchedulerSnapshot(
            name=self.name,
            saved_at=self._clock(),
            tasks=[
                TaskSnapshot(
                    task_id=task.task_id,
                    kind=task.kind,
                    next_run_at=task.next_run_at,
                    last_run_at=task.last_run_at,
                    enabled=task.enabled,
                )
                for task in [*self._one_time.values(), *self._tasks.values()]
            ],
            context=copy.deepcopy(self._context),
        )

    def _checkpoint(self) -> None:
        if self._store is None:
            return
        snapshot: SchedulerSnapshot | None = None
        for attempt in range(1, _SNAPSHOT_ATTEMPTS + 1):
            try:
                with self._lock:
                    snapshot = self._build_snapshot()
                break
            except RuntimeError as exc:
                # a handler mutated a shared container while it was being copied
                logger.debug("Snapshot attempt %d of %s failed: %s", attempt, self.name, exc)
        if snapshot is None:
            logger.warning(
                "Skipping checkpoint of %s: context changed during %d copy attempts",
                self.name,
                _SNAPSHOT_ATTEMPTS,
            )
        else:
            try:
                self._store.save(snapshot)
            except OSError:
                logger.exception("Failed to write scheduler snapshot to %s", self._store.path)
        self._last_checkpoint_at = time.monotonic()


def _checked_timeout(task_id: str, timeout_seconds: float | None) -> float | None:
    if timeout_seconds is not None and timeout_seconds <= 0:
        raise ValueError(f"Timeout for {task_id} must be > 0, got {timeout_seconds}")
    return timeout_seconds


def _to_task_view(task: ScheduledTask) -> TaskView:
    return TaskView(
        task_id=task.task_id,
        kind=task.kind,
        state=task.state,
        enabled=task.enabled,
        next_run_at=task.next_run_at,
        last_run_at=task.last_run_at,
        run_count=task.run_count,
        last_error=task.last_error,
    )
