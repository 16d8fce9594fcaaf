"""
Task runner interface.

Migration runs are long; the HTTP layer hands them to a TaskRunner and
returns at once. Progress is then read from the session and the event
stream, not from the task result.
"""
from abc import ABC, abstractmethod
from typing import Callable, Optional


class TaskRunner(ABC):
    """Runs callables inline or in the background."""

    @abstractmethod
    def submit(
        self,
        func: Callable,
        *args,
        task_id: Optional[str] = None,
        **kwargs,
    ) -> str:
        """
        Submit a task for execution.

        A failing task is logged, never raised to the caller.

        Args:
            func: Function to execute
            *args: Positional arguments
            task_id: Optional task ID (generated if not provided)
            **kwargs: Keyword arguments

        Returns:
            Task ID used in log lines
        """
