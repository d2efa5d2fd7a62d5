"""Host-side script service: task queue, runner processes, event relay.

Each call to :meth:`ScriptService.execute_script` creates a
:class:`ScriptTask`.  Tasks wait in a FIFO queue until a slot is free
(``max_concurrent_scripts``), then run in their own runner process.  The
service relays the runner's events to registered listeners, enforces a
hard deadline of ``compile + execution + grace`` seconds and guarantees
that every task ends with exactly one terminal event, synthesising a
``failed`` event when the process dies without one.

Listener events::

    task_created, task_started, task_log, task_progress, task_result,
    task_error, task_stopped, task_finished

Usage::

    service = ScriptService(settings)
    service.add_listener(lambda event, payload: print(event, payload))
    task_id = await service.execute_script("balance_check", wallets=wallets)
    task = await service.wait_for_task(task_id)
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Set, Union

from core.config import ProxyRef, RunnerSettings, WalletRef
from core.errors import ErrorType, ScriptValidationError
from core.protocol import (
    EventType,
    ExecuteRequest,
    RunEvent,
    StopRequest,
    drain_stderr,
    read_events,
    send_message,
    spawn_runner,
)
from core.registry import ScriptRegistry

logger = logging.getLogger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]

_RELAYED_EVENTS = {
    EventType.LOG: "task_log",
    EventType.PROGRESS: "task_progress",
    EventType.RESULT: "task_result",
    EventType.ERROR: "task_error",
}


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


FINISHED_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.STOPPED})


@dataclass
class ScriptTask:
    """One requested execution of a script.

    Attributes:
        task_id: Unique identifier.
        script_id: Catalog id of the script.
        script_path: Absolute path handed to the runner.
        status: Current lifecycle status.
        progress: Last reported percentage (0-100).
        logs: ``log`` event payloads, in order.
        results: ``result`` event payloads, in order.
        errors: ``error`` event payloads, in order.
        result: ``main()`` return value from the ``completed`` event.
        error: Message from the ``failed`` event.
        error_type: ``type`` from the ``failed`` event.
    """

    task_id: str
    script_id: str
    script_path: str
    params: Dict[str, Any] = field(default_factory=dict)
    wallets: List[WalletRef] = field(default_factory=list, repr=False)
    proxy: Optional[ProxyRef] = field(default=None, repr=False)
    status: TaskStatus = TaskStatus.PENDING
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    progress: int = 0
    logs: List[Dict[str, Any]] = field(default_factory=list, repr=False)
    results: List[Dict[str, Any]] = field(default_factory=list, repr=False)
    errors: List[Dict[str, Any]] = field(default_factory=list, repr=False)
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    exit_code: Optional[int] = None
    stop_requested: bool = False
    terminal_event: Optional[str] = None
    process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None:
            return None
        return (self.finished_at or time.time()) - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        """Summary safe to hand to listeners (no wallet keys)."""
        return {
            "task_id": self.task_id,
            "script_id": self.script_id,
            "status": self.status.value,
            "progress": self.progress,
            "wallet_count": len(self.wallets),
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration": self.duration,
            "result": self.result,
            "error": self.error,
            "error_type": self.error_type,
            "exit_code": self.exit_code,
        }


class ScriptService:
    """Queue and supervise script executions.

    Args:
        settings: Runner settings (timeouts, concurrency, interpreter).
        registry: Script catalog; one is created from ``settings`` if
            omitted.
    """

    def __init__(
        self,
        settings: Optional[RunnerSettings] = None,
        registry: Optional[ScriptRegistry] = None,
    ) -> None:
        self.settings = settings or RunnerSettings()
        self.registry = registry or ScriptRegistry(self.settings.scripts_dir, self.settings)
        self.concurrency_limit = max(1, self.settings.max_concurrent_scripts)
        self.tasks: Dict[str, ScriptTask] = {}
        self._queue: Deque[str] = deque()
        self._running: Set[str] = set()
        self._workers: Dict[str, asyncio.Task] = {}
        self._listeners: List[Listener] = []

    # ---- Listeners ---------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, event: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                logger.exception("Listener failed while handling %s", event)

    # ---- Public API --------------------------------------------------------

    async def execute_script(
        self,
        script_id: str,
        wallets: Optional[Sequence[Union[WalletRef, Dict[str, Any]]]] = None,
        params: Optional[Dict[str, Any]] = None,
        proxy: Optional[Union[ProxyRef, Dict[str, Any]]] = None,
    ) -> str:
        """Queue a script run and return its task id.

        *script_id* is a catalog id or a path to a script file.

        Raises:
            ScriptValidationError: If the script cannot be found.
        """
        candidate = Path(script_id)
        if candidate.suffix == ".py" and candidate.is_file():
            script_path = candidate
            resolved_id = candidate.stem
        else:
            info = await self.registry.get_script(script_id)
            if info is None:
                raise ScriptValidationError(f"Unknown script: {script_id}")
            script_path = info.path
            resolved_id = info.id

        task = ScriptTask(
            task_id=uuid.uuid4().hex,
            script_id=resolved_id,
            script_path=str(script_path.resolve()),
            params=dict(params or {}),
            wallets=[
                w if isinstance(w, WalletRef) else WalletRef.model_validate(w)
                for w in (wallets or [])
            ],
            proxy=proxy if proxy is None or isinstance(proxy, ProxyRef) else ProxyRef.model_validate(proxy),
        )
        self.tasks[task.task_id] = task
        self._queue.append(task.task_id)
        logger.info(
            "Queued task %s for script %s (%d wallet(s))",
            task.task_id[:8], task.script_id, len(task.wallets),
        )
        self._notify("task_created", task.to_dict())
        self._process_queue()
        return task.task_id

    async def stop_execution(self, task_id: str) -> bool:
        """Stop a queued or running task.

        A running task is asked to stop; if its process is still alive
        after ``stop_grace_seconds + stop_kill_margin_seconds`` it is
        killed.

        Returns:
            ``False`` if the task is unknown or already finished.
        """
        task = self.tasks.get(task_id)
        if task is None or task.is_finished:
            return False

        task.stop_requested = True
        if task.status is TaskStatus.PENDING:
            if task_id in self._queue:
                self._queue.remove(task_id)
            self._handle_event(task, RunEvent(type=EventType.FAILED, data={
                "error": "Stopped before start",
                "type": ErrorType.STOPPED.value,
            }))
            self._finish(task)
            return True

        process = task.process
        if process is None:
            # Dequeued but not spawned yet; the supervisor forwards the stop
            logger.info("Stop for task %s will be sent once its runner starts", task_id[:8])
            return True
        if process.returncode is not None:
            return False
        logger.info("Stopping task %s", task_id[:8])
        self._notify("task_stopped", task.to_dict())
        try:
            await send_message(process, StopRequest())
        except (ConnectionError, OSError) as e:
            logger.warning("Could not send stop to task %s (%s); terminating", task_id[:8], e)
            self._signal(process, terminate=True)

        wait = self.settings.stop_grace_seconds + self.settings.stop_kill_margin_seconds
        try:
            await asyncio.wait_for(process.wait(), timeout=wait)
        except asyncio.TimeoutError:
            logger.warning("Task %s ignored stop for %.1fs; killing", task_id[:8], wait)
            self._signal(process)
            await process.wait()
        return True

    def get_execution_status(self, task_id: str) -> Optional[Dict[str, Any]]:
        task = self.tasks.get(task_id)
        return task.to_dict() if task else None

    def get_all_tasks(self) -> List[Dict[str, Any]]:
        return [task.to_dict() for task in self.tasks.values()]

    async def wait_for_task(self, task_id: str, timeout: Optional[float] = None) -> ScriptTask:
        """Wait until *task_id* finishes and return it.

        Raises:
            KeyError: Unknown task.
            asyncio.TimeoutError: *timeout* elapsed first.
        """
        task = self.tasks[task_id]
        await asyncio.wait_for(task.done.wait(), timeout=timeout)
        return task

    def cleanup_completed_tasks(self, older_than: float = 3600.0) -> int:
        """Forget finished tasks that ended more than *older_than* seconds ago."""
        cutoff = time.time() - older_than
        stale = [
            task_id for task_id, task in self.tasks.items()
            if task.is_finished and (task.finished_at or 0) < cutoff
        ]
        for task_id in stale:
            del self.tasks[task_id]
        if stale:
            logger.info("Cleaned up %d finished task(s)", len(stale))
        return len(stale)

    def set_concurrency_limit(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("Concurrency limit must be at least 1")
        self.concurrency_limit = limit
        logger.info("Concurrency limit set to %d", limit)
        self._process_queue()

    async def shutdown(self) -> None:
        """Stop every queued and running task."""
        pending = [tid for tid, t in self.tasks.items() if not t.is_finished]
        await asyncio.gather(*(self.stop_execution(tid) for tid in pending))
        if self._workers:
            await asyncio.gather(*self._workers.values(), return_exceptions=True)

    # ---- Scheduling --------------------------------------------------------

    def _process_queue(self) -> None:
        while self._queue and len(self._running) < self.concurrency_limit:
            task_id = self._queue.popleft()
            task = self.tasks.get(task_id)
            if task is None or task.status is not TaskStatus.PENDING:
                continue
            self._running.add(task_id)
            task.status = TaskStatus.RUNNING
            self._workers[task_id] = asyncio.create_task(
                self._run_task(task), name=f"script-task-{task_id[:8]}",
            )

    async def _run_task(self, task: ScriptTask) -> None:
        try:
            await self._supervise(task)
        except Exception as e:
            logger.exception("Task %s crashed in the host", task.task_id[:8])
            self._handle_event(task, RunEvent(type=EventType.FAILED, data={
                "error": f"Runner could not be supervised: {e}",
                "type": ErrorType.PROCESS_ERROR.value,
            }))
        finally:
            if task.process is not None and task.process.returncode is None:
                self._signal(task.process)
            self._running.discard(task.task_id)
            self._workers.pop(task.task_id, None)
            self._finish(task)
            self._process_queue()

    async def _supervise(self, task: ScriptTask) -> None:
        process = await spawn_runner(self.settings)
        task.process = process
        task.started_at = time.time()
        label = f"task:{task.task_id[:8]}"
        logger.info("Task %s started (pid %s)", task.task_id[:8], process.pid)
        self._notify("task_started", task.to_dict())

        stderr_task = asyncio.create_task(drain_stderr(process.stderr, label))
        await send_message(process, ExecuteRequest(
            script_path=task.script_path,
            params=task.params,
            wallets=task.wallets,
            proxy=task.proxy,
        ))
        if task.stop_requested:
            self._notify("task_stopped", task.to_dict())
            await send_message(process, StopRequest())

        deadline = (
            self.settings.compile_timeout_seconds
            + self.settings.execution_timeout_seconds
            + self.settings.stop_grace_seconds
        )
        try:
            await asyncio.wait_for(self._relay(task, process, label), timeout=deadline)
        except asyncio.TimeoutError:
            logger.error("Task %s exceeded the %.0fs hard deadline; killing", task.task_id[:8], deadline)
            self._signal(process)
            self._handle_event(task, RunEvent(type=EventType.FAILED, data={
                "error": f"Script run timed out after {deadline:g}s",
                "type": ErrorType.TIMEOUT.value,
            }))

        task.exit_code = await process.wait()
        await stderr_task

        if task.terminal_event is None:
            if task.stop_requested:
                data = {"error": "Script stopped", "type": ErrorType.STOPPED.value}
            else:
                data = {
                    "error": f"Runner exited with code {task.exit_code} before reporting a result",
                    "type": ErrorType.PROCESS_ERROR.value,
                }
            self._handle_event(task, RunEvent(type=EventType.FAILED, data=data))

    async def _relay(self, task: ScriptTask, process: asyncio.subprocess.Process, label: str) -> None:
        async for event in read_events(process.stdout, label=label):
            self._handle_event(task, event)

    def _handle_event(self, task: ScriptTask, event: RunEvent) -> None:
        if task.terminal_event is not None:
            logger.debug(
                "Task %s: dropping %s after %s",
                task.task_id[:8], event.type.value, task.terminal_event,
            )
            return

        data = event.data
        if event.type is EventType.LOG:
            task.logs.append(data)
        elif event.type is EventType.PROGRESS:
            task.progress = int(data.get("percent") or 0)
        elif event.type is EventType.RESULT:
            task.results.append(data)
        elif event.type is EventType.ERROR:
            task.errors.append(data)
        elif event.type is EventType.COMPLETED:
            task.terminal_event = event.type.value
            task.result = data.get("result")
            task.progress = 100
            task.status = TaskStatus.STOPPED if task.stop_requested else TaskStatus.COMPLETED
        elif event.type is EventType.FAILED:
            task.terminal_event = event.type.value
            task.error = data.get("error")
            task.error_type = data.get("type")
            task.status = TaskStatus.STOPPED if task.stop_requested else TaskStatus.FAILED
            logger.warning("Task %s failed: %s", task.task_id[:8], task.error)
        else:
            logger.debug("Task %s: ignoring %s event", task.task_id[:8], event.type.value)
            return

        relayed = _RELAYED_EVENTS.get(event.type)
        if relayed:
            self._notify(relayed, {"task_id": task.task_id, **data})

    def _finish(self, task: ScriptTask) -> None:
        if task.done.is_set():
            return
        if task.terminal_event is None:
            # Exactly one terminal event per task
            self._handle_event(task, RunEvent(type=EventType.FAILED, data={
                "error": "Task ended without a result",
                "type": ErrorType.PROCESS_ERROR.value,
            }))
        task.finished_at = time.time()
        task.process = None
        task.done.set()
        logger.info("Task %s finished: %s", task.task_id[:8], task.status.value)
        self._notify("task_finished", {
            **task.to_dict(),
            "results": list(task.results),
            "errors": list(task.errors),
        })

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, terminate: bool = False) -> None:
        try:
            if terminate:
                process.terminate()
            else:
                process.kill()
        except ProcessLookupError:
            logger.debug("Runner process %s already exited", process.pid)
