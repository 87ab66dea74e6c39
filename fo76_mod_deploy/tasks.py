"""Background deployment tasks with progress events."""

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from queue import Empty, Queue
from typing import Any

from .deploy import CancelToken

logger = logging.getLogger(__name__)


@dataclass
class TaskInfo:
    id: str
    operation: str
    status: str = "pending"  # pending, running, completed, failed
    progress: float = 0.0
    message: str = ""
    result: Any = None
    error: str = ""
    events: Queue = field(default_factory=Queue)
    cancel: CancelToken = field(default_factory=CancelToken)
    done: threading.Event = field(default_factory=threading.Event)


class TaskManager:
    """
    Runs deployments off the caller's thread.

    Completion is delivered through the task's event queue, an optional
    callback, and `wait()`.
    """

    def __init__(self, keep_finished: int = 50):
        self._tasks: dict[str, TaskInfo] = {}
        self._lock = threading.Lock()
        self.keep_finished = keep_finished

    def create(self, operation: str) -> str:
        """Create a new task. Returns task_id."""
        task_id = str(uuid.uuid4())[:8]
        task = TaskInfo(id=task_id, operation=operation)
        with self._lock:
            self._prune()
            self._tasks[task_id] = task
        return task_id

    def _prune(self) -> None:
        """Forget the oldest finished tasks beyond `keep_finished`."""
        finished = [t.id for t in self._tasks.values() if t.done.is_set()]
        for task_id in finished[: max(0, len(finished) - self.keep_finished)]:
            del self._tasks[task_id]

    def forget(self, task_id: str) -> None:
        """Drop a finished task. Running tasks are kept."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is not None and task.done.is_set():
                del self._tasks[task_id]

    def run_in_background(
        self,
        task_id: str,
        fn: Callable[..., Any],
        *args,
        on_done: Callable[[TaskInfo], None] | None = None,
        **kwargs,
    ) -> None:
        """
        Run `fn(*args, cancel=<token>, **kwargs)` in a daemon thread.

        The task's cancel token is passed so long deployments can stop between
        operations.
        """
        task = self.get(task_id)
        if not task:
            return

        def _run():
            task.status = "running"
            task.events.put({"event": "status", "data": "running"})
            try:
                result = fn(*args, cancel=task.cancel, **kwargs)
                self.complete(task_id, result)
            except Exception as e:
                logger.exception("Task %s (%s) failed", task_id, task.operation)
                self.fail(task_id, str(e))
            if on_done is not None:
                on_done(task)

        thread = threading.Thread(target=_run, daemon=True)
        thread.start()

    def update_progress(self, task_id: str, pct: float, msg: str) -> None:
        """Push a progress update."""
        task = self.get(task_id)
        if not task:
            return
        task.progress = pct
        task.message = msg
        task.events.put({"event": "progress", "data": {"pct": pct, "msg": msg}})

    def complete(self, task_id: str, result: Any) -> None:
        """Mark task as completed."""
        task = self.get(task_id)
        if not task:
            return
        task.status = "completed"
        task.progress = 1.0
        task.result = result
        task.events.put({"event": "complete", "data": result})
        task.done.set()

    def fail(self, task_id: str, error: str) -> None:
        """Mark task as failed."""
        task = self.get(task_id)
        if not task:
            return
        task.status = "failed"
        task.error = error
        task.events.put({"event": "error", "data": error})
        task.done.set()

    def cancel(self, task_id: str) -> bool:
        """Ask a running task to stop at its next checkpoint."""
        task = self.get(task_id)
        if not task or task.done.is_set():
            return False
        task.cancel.cancel()
        return True

    def wait(self, task_id: str, timeout: float | None = None) -> TaskInfo | None:
        """Block until the task finished (or the timeout passed)."""
        task = self.get(task_id)
        if task:
            task.done.wait(timeout)
        return task

    def get(self, task_id: str) -> TaskInfo | None:
        with self._lock:
            return self._tasks.get(task_id)

    def drain_events(self, task_id: str) -> list[dict]:
        """Return all events queued for the task so far."""
        task = self.get(task_id)
        if not task:
            return []
        events = []
        while True:
            try:
                events.append(task.events.get_nowait())
            except Empty:
                return events
