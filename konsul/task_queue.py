"""Hintergrundverarbeitung für Webhooks mit Wiederholungen und Dead-Letter-Liste."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import logging
import queue
import threading
import time
from typing import Any, Callable, Optional
from uuid import uuid4

from konsul.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class Task:
    func: Callable[..., Any]
    args: tuple = ()
    kwargs: dict[str, Any] = field(default_factory=dict)
    # Wird nach dem letzten fehlgeschlagenen Versuch mit der Ausnahme aufgerufen.
    on_failure: Optional[Callable[[BaseException], None]] = None
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    attempts: int = 0
    last_error: Optional[str] = None


class TaskQueue:
    """Ein Worker-Thread arbeitet die Aufgaben der Reihe nach ab.

    Fehler mit ``retryable = True`` werden bis ``max_attempts`` wiederholt,
    alle anderen landen sofort in ``dead_letters``. Die Liste hält nur die
    letzten ``TASK_DEAD_LETTER_LIMIT`` Aufgaben.
    """

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        name: str = "konsul-tasks",
    ) -> None:
        self.max_attempts = max_attempts or settings.task_max_attempts
        self.retry_delay = settings.task_retry_delay if retry_delay is None else retry_delay
        self.name = name
        self.dead_letters: deque[Task] = deque(maxlen=settings.task_dead_letter_limit)
        self._queue: "queue.Queue[Optional[Task]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._worker, name=self.name, daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(None)
        thread.join(timeout)

    def submit(
        self,
        func: Callable[..., Any],
        *args: Any,
        on_failure: Optional[Callable[[BaseException], None]] = None,
        **kwargs: Any,
    ) -> Task:
        task = Task(func=func, args=args, kwargs=kwargs, on_failure=on_failure)
        self.start()
        self._queue.put(task)
        logger.debug("Queued task %s (%s)", task.id, getattr(func, "__name__", func))
        return task

    def join(self) -> None:
        """Blockiert, bis alle eingereihten Aufgaben erledigt sind."""
        self._queue.join()

    def _worker(self) -> None:
        while True:
            task = self._queue.get()
            try:
                if task is None:
                    return
                self.run(task)
            finally:
                self._queue.task_done()

    def run(self, task: Task) -> None:
        """Führt eine Aufgabe inklusive aller Wiederholungen aus."""
        while True:
            task.attempts += 1
            try:
                task.func(*task.args, **task.kwargs)
                return
            except Exception as exc:
                task.last_error = repr(exc)
                retryable = getattr(exc, "retryable", False)
                if retryable and task.attempts < self.max_attempts:
                    logger.warning(
                        "Task %s failed (attempt %d/%d): %s",
                        task.id,
                        task.attempts,
                        self.max_attempts,
                        exc,
                    )
                    time.sleep(self.retry_delay * task.attempts)
                    continue
                logger.exception("Task %s moved to dead letters after %d attempts", task.id, task.attempts)
                self.dead_letters.append(task)
                if task.on_failure is not None:
                    try:
                        task.on_failure(exc)
                    except Exception:
                        logger.exception("Failure callback of task %s failed", task.id)
                return


_task_queue: Optional[TaskQueue] = None


def get_task_queue() -> TaskQueue:
    global _task_queue
    if _task_queue is None:
        _task_queue = TaskQueue()
    return _task_queue


def set_task_queue(task_queue: Optional[TaskQueue]) -> None:
    global _task_queue
    _task_queue = task_queue
