"""
TaskScheduler: recurring async tasks on a single cooperative polling loop.

Each registered task runs on its own interval. The poll loop never waits on
a task; executions are dispatched as independent asyncio tasks and a task
is never executed twice concurrently.

Failure handling per task:
- failed run -> retry after ``retry_delay * 2 ** (attempt - 1)`` seconds
- retries exhausted -> counter reset, ``TaskFailedEvent``, normal cadence resumes
- run exceeds ``timeout`` -> abandoned (WARNING), rescheduled one interval later;
  the abandoned run's eventual outcome is ignored

Usage:
    scheduler = TaskScheduler(poll_interval=1.0)
    task_id = scheduler.register_task("Position Status Monitor", 10.0, monitor.check_all_active_positions,
                                      max_retries=3, retry_delay=30.0, timeout=120.0)
    scheduler.start()
    ...
    await scheduler.shutdown()
"""
import asyncio
import contextlib
import json
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from dlmm_monitor.domain.events import (
    EventListener,
    LogEvent,
    LogLevel,
    SchedulerEvent,
    TaskCompleteEvent,
    TaskFailedEvent,
)
from dlmm_monitor.domain.models import utc_now
from dlmm_monitor.exceptions import SchedulerError
from dlmm_monitor.monitoring.logger import get_logger

logger = get_logger(__name__)

TaskFn = Callable[[], Awaitable[Any]]

UPDATABLE_FIELDS = frozenset({"name", "interval", "enabled", "fn", "max_retries", "retry_delay", "timeout"})


@dataclass
class ScheduledTask:
    """A registered recurring unit of work. Durations are in seconds."""
    id: str
    name: str
    interval: float
    fn: TaskFn
    enabled: bool = True
    max_retries: int = 0
    retry_delay: float = 0.0
    timeout: Optional[float] = None
    retry_attempts: int = 0
    last_run_time: Optional[datetime] = None
    next_run_time: Optional[datetime] = None
    running: bool = False
    # Incremented on every dispatch; a finishing run only counts if it is still current
    run_generation: int = 0
    handle: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view (no callback, no handle)."""
        return {
            "id": self.id,
            "name": self.name,
            "interval": self.interval,
            "enabled": self.enabled,
            "max_retries": self.max_retries,
            "retry_delay": self.retry_delay,
            "timeout": self.timeout,
            "retry_attempts": self.retry_attempts,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "next_run_time": self.next_run_time.isoformat() if self.next_run_time else None,
            "running": self.running,
        }


class TaskScheduler:
    """
    Recurring task engine.

    All state lives on the event loop thread; methods must be called from
    that thread (no locking).
    """

    def __init__(
        self,
        poll_interval: float = 1.0,
        registry_path: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
        cancel_stuck_tasks: bool = False,
    ):
        """
        Args:
            poll_interval: Seconds between poll cycles
            registry_path: Optional JSON file receiving a snapshot of the task table
            clock: Returns the current timezone-aware time (injectable for tests)
            cancel_stuck_tasks: Also cancel the coroutine of a timed-out run
        """
        self._tasks: Dict[str, ScheduledTask] = {}
        self._listeners: List[EventListener] = []
        self._in_flight: Set[asyncio.Task] = set()
        self._poll_interval = poll_interval
        self._registry_path = Path(registry_path) if registry_path else None
        self._clock = clock
        self._cancel_stuck_tasks = cancel_stuck_tasks
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self.previous_registry: List[Dict[str, Any]] = []

        self._load_registry()

    # ------------------------------------------------------------------
    # Task table
    # ------------------------------------------------------------------

    def register_task(
        self,
        name: str,
        interval: float,
        fn: TaskFn,
        *,
        enabled: bool = True,
        max_retries: int = 0,
        retry_delay: float = 0.0,
        timeout: Optional[float] = None,
    ) -> str:
        """Register a new recurring task and return its id. First run is one interval from now."""
        task_id = f"task_{uuid.uuid4().hex}"
        task = ScheduledTask(
            id=task_id,
            name=name,
            interval=interval,
            fn=fn,
            enabled=enabled,
            max_retries=max_retries,
            retry_delay=retry_delay,
            timeout=timeout,
            next_run_time=self._clock() + timedelta(seconds=interval),
        )
        self._tasks[task_id] = task
        self.log(LogLevel.INFO, f"Task registered: {name}", task_id=task_id, interval=interval)
        self._save_registry()
        return task_id

    def update_task(self, task_id: str, **updates: Any) -> bool:
        """
        Merge ``updates`` into a task. Returns False if the id is unknown.

        Changing ``interval`` on a task that already ran moves its next run
        to ``last_run_time + interval``.
        Lowering ``max_retries`` caps the retries already counted.
        """
        task = self._tasks.get(task_id)
        if task is None:
            return False

        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise SchedulerError(f"Cannot update task fields: {sorted(unknown)}")

        for key, value in updates.items():
            setattr(task, key, value)

        if "interval" in updates and task.last_run_time is not None:
            task.next_run_time = task.last_run_time + timedelta(seconds=task.interval)
        task.retry_attempts = min(task.retry_attempts, task.max_retries)

        self.log(
            LogLevel.INFO,
            f"Task updated: {task.name}",
            task_id=task_id,
            updates=sorted(k for k in updates if k != "fn"),
        )
        self._save_registry()
        return True

    def remove_task(self, task_id: str) -> bool:
        """Delete a task. An in-flight run finishes but is not rescheduled."""
        task = self._tasks.pop(task_id, None)
        if task is None:
            return False
        self.log(LogLevel.INFO, "Task removed", task_id=task_id, name=task.name)
        self._save_registry()
        return True

    def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        return self._tasks.get(task_id)

    def get_tasks(self) -> List[ScheduledTask]:
        return list(self._tasks.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the polling loop. Must be called with a running event loop."""
        if self._running:
            return

        loop = asyncio.get_running_loop()
        if self._loop_task is not None and not self._loop_task.done():
            # A stopped loop still sleeping out its last period
            self._loop_task.cancel()

        self._running = True
        self.log(LogLevel.INFO, "Task scheduler started", poll_interval=self._poll_interval)
        self._loop_task = loop.create_task(self._poll_loop(), name="task-scheduler-poll")

    def stop(self) -> None:
        """Stop polling. In-flight executions run to completion."""
        if not self._running:
            return
        self._running = False
        self.log(LogLevel.INFO, "Task scheduler stopped")

    async def shutdown(self, wait_for_tasks: bool = True) -> None:
        """Stop polling and optionally wait for in-flight executions to finish."""
        self.stop()

        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        if wait_for_tasks and self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                self._poll_once()
            except Exception as e:
                logger.error("Scheduler poll cycle failed", error=str(e), exc_info=True)
            await asyncio.sleep(self._poll_interval)

    def _poll_once(self) -> None:
        """One poll cycle: abandon stuck runs, dispatch due tasks."""
        now = self._clock()

        for task in list(self._tasks.values()):
            if not task.enabled:
                continue

            if task.running and task.timeout is not None:
                elapsed = (now - task.last_run_time).total_seconds() if task.last_run_time else 0.0
                if elapsed > task.timeout:
                    self.log(
                        LogLevel.WARNING,
                        f"Task timed out: {task.name}",
                        task_id=task.id,
                        elapsed_seconds=elapsed,
                        timeout=task.timeout,
                    )
                    self._abandon(task)
                    task.next_run_time = now + timedelta(seconds=task.interval)
                    continue

            if not task.running and task.next_run_time is not None and now >= task.next_run_time:
                self._dispatch(task)

    def _abandon(self, task: ScheduledTask) -> None:
        task.running = False
        handle, task.handle = task.handle, None
        if self._cancel_stuck_tasks and handle is not None and not handle.done():
            handle.cancel()

    def _dispatch(self, task: ScheduledTask) -> None:
        generation = self._begin_run(task)
        handle = asyncio.get_running_loop().create_task(
            self._run_scheduled(task, generation), name=f"scheduled:{task.name}"
        )
        task.handle = handle
        self._in_flight.add(handle)
        handle.add_done_callback(self._in_flight.discard)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_task_now(self, task_id: str) -> Any:
        """
        Execute a task immediately, outside its schedule.

        Raises SchedulerError if the task is unknown or already running;
        propagates the task's own exception.
        """
        task = self._tasks.get(task_id)
        if task is None:
            raise SchedulerError(f"Task not found: {task_id}")
        if task.running:
            raise SchedulerError(f"Task already running: {task.name}")

        generation = self._begin_run(task)
        return await self._execute(task, generation)

    def _begin_run(self, task: ScheduledTask) -> int:
        now = self._clock()
        task.run_generation += 1
        task.running = True
        task.last_run_time = now
        task.next_run_time = now + timedelta(seconds=task.interval)
        return task.run_generation

    def _is_current(self, task: ScheduledTask, generation: int) -> bool:
        return task.running and task.run_generation == generation and self._tasks.get(task.id) is task

    async def _run_scheduled(self, task: ScheduledTask, generation: int) -> None:
        try:
            await self._execute(task, generation)
        except Exception as e:
            # Already logged and scheduled for retry by _on_failure
            logger.debug("Scheduled run raised", task_id=task.id, error=str(e))

    async def _execute(self, task: ScheduledTask, generation: int) -> Any:
        started = task.last_run_time
        self.log(
            LogLevel.INFO,
            f"Executing task: {task.name}",
            task_id=task.id,
            start_time=started.isoformat(),
            next_run_time=task.next_run_time.isoformat(),
        )

        try:
            result = await task.fn()
        except Exception as e:
            self._on_failure(task, generation, e)
            raise

        self._on_success(task, generation, result, started)
        return result

    def _on_success(self, task: ScheduledTask, generation: int, result: Any, started: datetime) -> None:
        if not self._is_current(task, generation):
            logger.debug("Ignoring completion of abandoned run", task_id=task.id, name=task.name)
            return

        task.retry_attempts = 0
        self.log(
            LogLevel.INFO,
            f"Task completed: {task.name}",
            task_id=task.id,
            duration_seconds=(self._clock() - started).total_seconds(),
        )
        task.running = False
        task.handle = None
        self._emit(TaskCompleteEvent(task_id=task.id, name=task.name, result=result))

    def _on_failure(self, task: ScheduledTask, generation: int, error: Exception) -> None:
        if not self._is_current(task, generation):
            logger.warning("Abandoned run failed after timeout", task_id=task.id, name=task.name, error=str(error))
            return

        task.running = False
        task.handle = None
        self.log(
            LogLevel.ERROR,
            f"Task failed: {task.name}",
            task_id=task.id,
            error=str(error),
            retry_attempt=task.retry_attempts,
            max_retries=task.max_retries,
        )

        if task.retry_attempts < task.max_retries:
            task.retry_attempts += 1
            delay = task.retry_delay * 2 ** (task.retry_attempts - 1)
            task.next_run_time = self._clock() + timedelta(seconds=delay)
            self.log(
                LogLevel.INFO,
                f"Scheduling retry for task: {task.name}",
                task_id=task.id,
                retry_attempt=task.retry_attempts,
                retry_delay=delay,
                next_retry_time=task.next_run_time.isoformat(),
            )
        else:
            task.retry_attempts = 0
            self._emit(TaskFailedEvent(task_id=task.id, name=task.name, error=str(error), cause=error))

    # ------------------------------------------------------------------
    # Logging and events
    # ------------------------------------------------------------------

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register an event listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def log(self, level: LogLevel, message: str, **metadata: Any) -> LogEvent:
        """Write a structured log line and emit it as a LogEvent."""
        level = LogLevel(level)
        getattr(logger, level.value.lower())(message, **metadata)
        event = LogEvent(timestamp=self._clock(), level=level, message=message, metadata=metadata)
        self._emit(event)
        return event

    def _emit(self, event: SchedulerEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning("Scheduler event listener failed", listener=repr(listener), error=str(e))

    # ------------------------------------------------------------------
    # Registry snapshot
    # ------------------------------------------------------------------

    def _save_registry(self) -> None:
        if self._registry_path is None:
            return
        try:
            self._registry_path.parent.mkdir(parents=True, exist_ok=True)
            snapshot = [task.to_dict() for task in self._tasks.values()]
            tmp_path = self._registry_path.with_suffix(self._registry_path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(snapshot, indent=2))
            os.replace(tmp_path, self._registry_path)
        except OSError as e:
            self.log(LogLevel.ERROR, "Error saving task registry", error=str(e), path=str(self._registry_path))

    def _load_registry(self) -> None:
        if self._registry_path is None:
            return
        if not self._registry_path.exists():
            self.log(LogLevel.INFO, "No task registry found. Starting empty.", path=str(self._registry_path))
            return
        try:
            data = json.loads(self._registry_path.read_text())
        except (OSError, ValueError) as e:
            self.log(LogLevel.ERROR, "Error loading task registry", error=str(e), path=str(self._registry_path))
            return

        if not isinstance(data, list):
            self.log(LogLevel.WARNING, "Ignoring malformed task registry", path=str(self._registry_path))
            return

        self.previous_registry = data
        for entry in data:
            # Callbacks are code; these must be re-registered by their owners
            self.log(
                LogLevel.INFO,
                f"Found task in registry: {entry.get('name')}",
                task_id=entry.get("id"),
                restorable=False,
            )
