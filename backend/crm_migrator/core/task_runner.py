"""
Shared task runner singleton for background migration runs.
"""
from typing import Optional
import atexit
from crm_migrator.adapters.tasks_inline import InlineTaskRunner

# Module-level singleton instance
_task_runner: Optional[InlineTaskRunner] = None


def get_task_runner() -> InlineTaskRunner:
    """
    Get the shared task runner, creating it in thread mode on first call.

    The runner is shut down on interpreter exit.
    """
    global _task_runner
    if _task_runner is None:
        _task_runner = InlineTaskRunner(mode="thread", max_workers=2)
        atexit.register(shutdown_task_runner)
    return _task_runner


def shutdown_task_runner():
    """Shutdown the task runner without waiting for a running migration."""
    global _task_runner
    if _task_runner is not None:
        _task_runner.shutdown(wait=False)
        _task_runner = None
