"""
Inline task runner implementation.

Runs tasks in the calling thread ("inline", used by tests) or on a small
thread pool ("thread", used by the API for migration runs).
"""
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from crm_migrator.core.logging_config import migration_logger as logger
from crm_migrator.ports.tasks import TaskRunner


class InlineTaskRunner(TaskRunner):
    """
    Inline/threaded task execution.

    Modes:
    - inline: Execute immediately in current thread (default)
    - thread: Execute in background thread pool
    """

    def __init__(self, mode: str = "inline", max_workers: int = 2):
        if mode not in ("inline", "thread"):
            raise ValueError(f"Unknown task runner mode: {mode}")
        self.mode = mode
        self.executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="migration")
            if mode == "thread" else None
        )

    def submit(
        self,
        func: Callable,
        *args,
        task_id: Optional[str] = None,
        **kwargs,
    ) -> str:
        """Submit a task for execution."""
        task_id = task_id or str(uuid.uuid4())

        if self.mode == "inline":
            try:
                func(*args, **kwargs)
            except Exception as e:
                logger.error(f"Task {task_id} failed: {e}")
        else:
            future = self.executor.submit(func, *args, **kwargs)
            future.add_done_callback(lambda f: self._log_failure(task_id, f))
        return task_id

    @staticmethod
    def _log_failure(task_id: str, future: Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Task {task_id} failed: {future.exception()}")

    def shutdown(self, wait: bool = True):
        """Shutdown executor (cleanup)."""
        if self.executor:
            self.executor.shutdown(wait=wait)
