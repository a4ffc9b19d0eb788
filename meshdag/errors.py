"""Exception hierarchy for the orchestration engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from meshdag.models import ValidationResult


class MeshDagError(Exception):
    """Base class for all engine errors."""


class DAGValidationError(MeshDagError):
    """A DAG specification failed structural validation."""

    def __init__(self, validation: "ValidationResult"):
        super().__init__(validation.reason)
        self.validation = validation


class TaskValidationError(MeshDagError):
    """A task failed its preconditions. No attempt was made."""

    def __init__(self, task_id: str, reason: str):
        super().__init__(f"Task {task_id} is invalid: {reason}")
        self.task_id = task_id
        self.reason = reason


class CircuitOpenError(MeshDagError):
    """The circuit breaker for a task type is open: the type is suspended."""

    def __init__(self, task_type: str, failures: int, cooldown: float):
        super().__init__(
            f"Circuit open for task type '{task_type}' "
            f"({failures} consecutive failures, cooldown {cooldown:g}s)"
        )
        self.task_type = task_type
        self.failures = failures
        self.cooldown = cooldown


class OutputContractError(MeshDagError):
    """Task output is structurally invalid for its type."""

    def __init__(self, task_id: str, task_type: str, missing: list[str]):
        detail = f"missing {', '.join(missing)}" if missing else "expected a mapping"
        super().__init__(f"Invalid output from task {task_id} ({task_type}): {detail}")
        self.task_id = task_id
        self.task_type = task_type
        self.missing = missing


class TaskTimeoutError(MeshDagError, TimeoutError):
    """A single attempt ran past the task timeout."""

    def __init__(self, task_id: str, timeout: float):
        super().__init__(f"Task {task_id} timed out after {timeout:g}s")
        self.task_id = task_id
        self.timeout = timeout


class TaskCancelledError(MeshDagError):
    """The owning workflow was cancelled before the next attempt could start."""

    def __init__(self, task_id: str, reason: str = "workflow cancelled"):
        super().__init__(f"Task {task_id} cancelled: {reason}")
        self.task_id = task_id
        self.reason = reason


class CycleError(MeshDagError):
    """Topological sort met a node that is still in progress."""

    def __init__(self, node_id: str):
        super().__init__(f"Dependency cycle through '{node_id}' reached topological sort")
        self.node_id = node_id


class InvalidTransitionError(MeshDagError):
    def __init__(self, workflow_id: str, current: str, target: str):
        super().__init__(f"Workflow {workflow_id}: cannot move from {current} to {target}")
        self.workflow_id = workflow_id
        self.current = current
        self.target = target


class NotFoundError(MeshDagError, LookupError):
    """No workflow or task is known under the given id."""

    def __init__(self, kind: str, item_id: str):
        super().__init__(f"{kind.capitalize()} {item_id} not found")
        self.kind = kind
        self.item_id = item_id
