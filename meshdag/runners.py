"""Task runner registry: maps task types to the caller-supplied task bodies.

The engine never invents task work or outcomes; every task type it accepts
must have a runner registered here.
"""

from __future__ import annotations

import importlib
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable

from meshdag.config import SUPPORTED_TASK_TYPES

if TYPE_CHECKING:
    from meshdag.models import WorkflowTask

logger = logging.getLogger(__name__)

# Type for task runner functions: sync or async, called with the task snapshot
TaskRunner = Callable[["WorkflowTask"], Awaitable[Any] | Any]


class TaskRunnerRegistry:
    """Registry of task types and their runners."""

    def __init__(self):
        self._runners: dict[str, TaskRunner] = {}

    def register(self, task_type: str, runner: TaskRunner):
        """Register the runner for a task type, replacing any previous one."""
        self._runners[task_type] = runner

    def unregister(self, task_type: str):
        self._runners.pop(task_type, None)

    def get(self, task_type: str) -> TaskRunner | None:
        return self._runners.get(task_type)

    def supports(self, task_type: str) -> bool:
        return task_type in self._runners

    def types(self) -> list[str]:
        return list(self._runners.keys())

    async def run(self, task: "WorkflowTask") -> Any:
        """Invoke the runner for `task.type`. Errors propagate to the executor."""
        runner = self._runners.get(task.type)
        if runner is None:
            raise LookupError(f"No runner registered for task type '{task.type}'")

        result = runner(task)
        # Handle both sync and async runners
        if hasattr(result, "__await__"):
            result = await result
        return result


def create_default_registry(
    runner: TaskRunner | None = None,
    task_types: Iterable[str] = SUPPORTED_TASK_TYPES,
) -> TaskRunnerRegistry:
    """Registry with `runner` wired to every supported task type."""
    registry = TaskRunnerRegistry()
    runner = runner or echo_runner
    for task_type in task_types:
        registry.register(task_type, runner)
    return registry


def load_runner(path: str) -> TaskRunner:
    """Import a runner from a ``module:callable`` path."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Task runner must look like 'module:callable', got '{path}'")
    module = importlib.import_module(module_name)
    runner = getattr(module, attr)
    if not callable(runner):
        raise TypeError(f"Task runner '{path}' is not callable")
    logger.info(f"Loaded task runner {path}")
    return runner


def echo_runner(task: "WorkflowTask") -> dict[str, Any]:
    """Return the task's parameters as its output."""
    return dict(task.parameters or {})
