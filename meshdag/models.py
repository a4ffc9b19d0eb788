"""Core data structures for the meshdag orchestration engine."""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Mapping


def generate_id() -> str:
    return uuid.uuid4().hex[:12]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _get(data: Mapping[str, Any], key: str, default: Any = None) -> Any:
    """Read `key` from a JSON-ish mapping, accepting snake_case or camelCase."""
    if key in data:
        return data[key]
    return data.get(_camel(key), default)


def _error_text(error: BaseException | None) -> str | None:
    if error is None:
        return None
    return str(error) or type(error).__name__


NODE_TYPES = ("task", "gateway", "event", "subprocess")
EDGE_TYPES = ("success", "failure", "conditional", "parallel")
BACKOFF_STRATEGIES = ("linear", "exponential", "constant")
FAILURE_STRATEGIES = ("stop", "continue", "retry", "compensate")

WORKFLOW_STATUSES = ("created", "running", "paused", "completed", "failed", "cancelled")
TERMINAL_WORKFLOW_STATUSES = frozenset({"completed", "failed", "cancelled"})
TASK_STATUSES = ("pending", "running", "completed", "failed", "cancelled")


# ---------------------------------------------------------------------------
# DAG specification (immutable once submitted)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3  # retries after the first attempt
    backoff_strategy: str = "exponential"  # linear | exponential | constant
    initial_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # 0 disables the cap

    def delay_for(self, attempt: int) -> float:
        """Backoff before retrying after the failure of zero-based `attempt`."""
        if self.backoff_strategy == "exponential":
            delay = self.initial_delay * (2 ** attempt)
        elif self.backoff_strategy == "linear":
            delay = self.initial_delay * (attempt + 1)
        else:
            delay = self.initial_delay
        if self.max_delay > 0:
            delay = min(delay, self.max_delay)
        return delay

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RetryPolicy:
        return cls(
            max_attempts=int(_get(data, "max_attempts", 3)),
            backoff_strategy=_get(data, "backoff_strategy", "exponential"),
            initial_delay=float(_get(data, "initial_delay", 1.0)),
            max_delay=float(_get(data, "max_delay", 30.0)),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ExecutionPolicy:
    max_concurrency: int = 4
    timeout: float = 0.0  # whole-run deadline in seconds, 0 = none
    retry_attempts: int = 3  # retries for task nodes without their own policy
    failure_threshold: int = 0  # unrecovered failures before the run stops scheduling, 0 = none

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutionPolicy:
        return cls(
            max_concurrency=int(_get(data, "max_concurrency", 4)),
            timeout=float(_get(data, "timeout", 0.0)),
            retry_attempts=int(_get(data, "retry_attempts", 3)),
            failure_threshold=int(_get(data, "failure_threshold", 0)),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class FailureHandlingPolicy:
    strategy: str = "retry"  # stop | continue | retry | compensate
    compensation_tasks: tuple[str, ...] = ()
    notification_channels: tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "compensation_tasks", tuple(self.compensation_tasks))
        object.__setattr__(self, "notification_channels", tuple(self.notification_channels))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FailureHandlingPolicy:
        return cls(
            strategy=_get(data, "strategy", "retry"),
            compensation_tasks=tuple(_get(data, "compensation_tasks", ()) or ()),
            notification_channels=tuple(_get(data, "notification_channels", ()) or ()),
        )

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy,
            "compensation_tasks": list(self.compensation_tasks),
            "notification_channels": list(self.notification_channels),
        }


@dataclass(frozen=True)
class WorkflowNode:
    """A declarative unit of work or control flow within a DAG."""

    id: str
    name: str
    type: str = "task"  # task | gateway | event | subprocess
    task_type: str | None = None
    dependencies: tuple[str, ...] = ()
    timeout: float | None = None
    retry_policy: RetryPolicy | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "dependencies", tuple(self.dependencies))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WorkflowNode:
        retry = _get(data, "retry_policy")
        timeout = _get(data, "timeout")
        return cls(
            id=_get(data, "id", ""),
            name=_get(data, "name", ""),
            type=_get(data, "type", "task"),
            task_type=_get(data, "task_type"),
            dependencies=tuple(_get(data, "dependencies", ()) or ()),
            timeout=float(timeout) if timeout is not None else None,
            retry_policy=RetryPolicy.from_dict(retry) if retry else None,
            parameters=dict(_get(data, "parameters", {}) or {}),
            metadata=dict(_get(data, "metadata", {}) or {}),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "task_type": self.task_type,
            "dependencies": list(self.dependencies),
            "timeout": self.timeout,
            "retry_policy": self.retry_policy.to_dict() if self.retry_policy else None,
            "parameters": self.parameters,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class WorkflowEdge:
    id: str
    source: str
    target: str
    type: str = "success"  # success | failure | conditional | parallel
    condition: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WorkflowEdge:
        return cls(
            id=_get(data, "id", ""),
            source=_get(data, "source", ""),
            target=_get(data, "target", ""),
            type=_get(data, "type", "success"),
            condition=_get(data, "condition"),
            metadata=dict(_get(data, "metadata", {}) or {}),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class DAGSpec:
    id: str
    name: str
    version: str = "1.0.0"
    nodes: tuple[WorkflowNode, ...] = ()
    edges: tuple[WorkflowEdge, ...] = ()
    execution_policy: ExecutionPolicy = field(default_factory=ExecutionPolicy)
    failure_handling: FailureHandlingPolicy = field(default_factory=FailureHandlingPolicy)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "edges", tuple(self.edges))

    def node(self, node_id: str) -> WorkflowNode | None:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def task_nodes(self) -> list[WorkflowNode]:
        """Task nodes that run in the normal flow (compensation-only nodes excluded)."""
        reserved = set(self.failure_handling.compensation_tasks)
        return [n for n in self.nodes if n.type == "task" and n.id not in reserved]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DAGSpec:
        policy = _get(data, "execution_policy") or {}
        handling = _get(data, "failure_handling") or _get(data, "failure_handling_policy") or {}
        return cls(
            id=_get(data, "id", ""),
            name=_get(data, "name", ""),
            version=str(_get(data, "version", "1.0.0")),
            nodes=tuple(WorkflowNode.from_dict(n) for n in _get(data, "nodes", ()) or ()),
            edges=tuple(WorkflowEdge.from_dict(e) for e in _get(data, "edges", ()) or ()),
            execution_policy=ExecutionPolicy.from_dict(policy),
            failure_handling=FailureHandlingPolicy.from_dict(handling),
            metadata=dict(_get(data, "metadata", {}) or {}),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "execution_policy": self.execution_policy.to_dict(),
            "failure_handling": self.failure_handling.to_dict(),
            "metadata": self.metadata,
        }


@dataclass
class ValidationResult:
    result: bool
    reason: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"result": self.result, "reason": self.reason, "details": self.details}


# ---------------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------------


@dataclass
class DAGInstance:
    """Runtime wrapper around a DAGSpec. Mutated in place by the supervisor."""

    spec: DAGSpec
    status: str = "created"  # created | running | paused | completed | failed | cancelled
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    execution_id: str = field(default_factory=lambda: f"exec-{generate_id()}")

    @property
    def id(self) -> str:
        return self.spec.id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.spec.name,
            "version": self.spec.version,
            "status": self.status,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "execution_id": self.execution_id,
        }


@dataclass
class WorkflowTask:
    """Runtime projection of a task node."""

    id: str = ""
    name: str = ""
    type: str = "default"
    parameters: dict[str, Any] | None = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    timeout: float = 30.0
    retry_policy: RetryPolicy | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    workflow_id: str | None = None

    def snapshot(self) -> WorkflowTask:
        """Private copy for a single execution."""
        return WorkflowTask(
            id=self.id,
            name=self.name,
            type=self.type,
            parameters=dict(self.parameters) if self.parameters is not None else None,
            dependencies=list(self.dependencies),
            timeout=self.timeout,
            retry_policy=self.retry_policy,
            metadata=dict(self.metadata),
            workflow_id=self.workflow_id,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WorkflowTask:
        retry = _get(data, "retry_policy")
        return cls(
            id=_get(data, "id", ""),
            name=_get(data, "name", ""),
            type=_get(data, "type", "default"),
            parameters=_get(data, "parameters", {}),
            dependencies=list(_get(data, "dependencies", []) or []),
            timeout=float(_get(data, "timeout", 30.0)),
            retry_policy=RetryPolicy.from_dict(retry) if retry else None,
            metadata=dict(_get(data, "metadata", {}) or {}),
            workflow_id=_get(data, "workflow_id"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "parameters": self.parameters,
            "dependencies": self.dependencies,
            "timeout": self.timeout,
            "retry_policy": self.retry_policy.to_dict() if self.retry_policy else None,
            "metadata": self.metadata,
            "workflow_id": self.workflow_id,
        }


@dataclass(frozen=True)
class TaskExecutionResult:
    task_id: str
    success: bool
    output: Any = None
    error: BaseException | None = None
    start_time: float = 0.0
    end_time: float = 0.0
    duration: float = 0.0
    retry_count: int = 0
    status: str = "pending"  # pending | running | completed | failed | cancelled
    attempts: tuple[float, ...] = ()  # start time of every attempt
    skipped: bool = False
    degraded: bool = False
    workflow_id: str | None = None

    @property
    def satisfies_dependents(self) -> bool:
        """Dependents may start after a completed or explicitly skipped task."""
        return self.status == "completed" or self.skipped

    @property
    def error_message(self) -> str | None:
        return _error_text(self.error)

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "success": self.success,
            "output": self.output,
            "error": self.error_message,
            "error_type": type(self.error).__name__ if self.error else None,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration,
            "retry_count": self.retry_count,
            "status": self.status,
            "attempts": list(self.attempts),
            "skipped": self.skipped,
            "degraded": self.degraded,
            "workflow_id": self.workflow_id,
        }


@dataclass
class WorkflowExecution:
    """Execution record. Results are appended, never rewritten."""

    execution_id: str
    workflow_id: str | None = None
    results: list[TaskExecutionResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    def add(self, result: TaskExecutionResult):
        self.results.append(result)

    def latest(self, task_id: str) -> TaskExecutionResult | None:
        for result in reversed(self.results):
            if result.task_id == task_id:
                return result
        return None

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "results": [r.to_dict() for r in self.results],
            "errors": self.errors,
            "warnings": self.warnings,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


# ---------------------------------------------------------------------------
# Dependency resolution
# ---------------------------------------------------------------------------


@dataclass
class DependencyInfo:
    """Metadata for one dependency. Lives for the duration of a resolve call."""

    id: str
    version: str | None = None
    dependencies: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)
    priority: int = 0
    slot: str | None = None

    @property
    def base_name(self) -> str:
        return self.id.split("@", 1)[0]

    @property
    def resolved_version(self) -> str | None:
        """Version from the `name@version` suffix, else the declared version."""
        if "@" in self.id:
            return self.id.split("@", 1)[1]
        return self.version

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DependencyInfo:
        return cls(
            id=_get(data, "id", ""),
            version=_get(data, "version"),
            dependencies=list(_get(data, "dependencies", []) or []),
            resources=list(_get(data, "resources", []) or []),
            priority=int(_get(data, "priority", 0)),
            slot=_get(data, "slot"),
        )


@dataclass
class Conflict:
    type: str  # version | resource | semantic | temporal
    ids: list[str]
    severity: str  # low | medium | high | critical
    description: str
    subject: str = ""  # base name, resource tag or slot the ids contend for
    versions: list[str] = field(default_factory=list)
    resolution: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DependencyResolutionResult:
    success: bool
    resolved_dependencies: list[str] = field(default_factory=list)
    unresolved_dependencies: list[str] = field(default_factory=list)
    circular_dependencies: list[str] = field(default_factory=list)
    execution_order: list[str] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "resolved_dependencies": self.resolved_dependencies,
            "unresolved_dependencies": self.unresolved_dependencies,
            "circular_dependencies": self.circular_dependencies,
            "execution_order": self.execution_order,
            "cycles": self.cycles,
            "conflicts": [c.to_dict() for c in self.conflicts],
        }


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


@dataclass
class CircuitBreakerStatus:
    task_type: str
    is_open: bool
    threshold: int
    current_failures: int
    cooldown: float
    state: str = "closed"  # closed | open | half_open
    last_failure_time: float | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FailureAnalysis:
    task_id: str
    failure_type: str  # transient | permanent | systemic | resource
    severity: str  # low | medium | high | critical
    frequency: int
    impact: str  # low | medium | high
    recovery_complexity: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FailureHandlingResult:
    success: bool
    task_id: str
    action: str  # retry | compensate | skip | fail | degrade
    compensation_tasks: list[str] = field(default_factory=list)
    error: BaseException | None = None
    analysis: FailureAnalysis | None = None
    completed_compensations: list[str] = field(default_factory=list)
    result: TaskExecutionResult | None = None  # final task outcome after recovery

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "task_id": self.task_id,
            "action": self.action,
            "compensation_tasks": self.compensation_tasks,
            "error": _error_text(self.error),
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "completed_compensations": self.completed_compensations,
            "result": self.result.to_dict() if self.result else None,
        }


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


@dataclass
class OrchestrationMetrics:
    active_workflows: int = 0
    completed_workflows: int = 0
    failed_workflows: int = 0
    average_execution_time: float = 0.0
    total_tasks_executed: int = 0
    success_rate: float = 0.0  # completed / total, 0..1
    throughput: int = 0  # results that ended inside the throughput window

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class WorkflowExecutionResult:
    success: bool
    workflow_id: str
    execution_id: str
    status: str  # running | completed | failed | cancelled
    tasks: list[TaskExecutionResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "status": self.status,
            "tasks": [t.to_dict() for t in self.tasks],
            "errors": self.errors,
            "warnings": self.warnings,
        }


@dataclass
class OrchestrationResult(WorkflowExecutionResult):
    metrics: OrchestrationMetrics = field(default_factory=OrchestrationMetrics)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["metrics"] = self.metrics.to_dict()
        return data


@dataclass
class WorkflowStatus:
    workflow_id: str
    status: str  # a workflow status, or not_found
    progress: float = 0.0  # percent
    completed_tasks: int = 0
    total_tasks: int = 0
    failed_tasks: int = 0
    start_time: float | None = None
    estimated_completion: float | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TaskStatus:
    task_id: str
    status: str  # a task status, or not_found
    progress: float = 0.0
    start_time: float | None = None
    end_time: float | None = None
    retry_count: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class EventKind(str, Enum):
    """Inbound events the supervisor reacts to."""

    WORKFLOW_START = "workflow.start"
    WORKFLOW_PAUSE = "workflow.pause"
    WORKFLOW_RESUME = "workflow.resume"
    WORKFLOW_CANCEL = "workflow.cancel"
    TASK_EXECUTE = "task.execute"
    TASK_COMPLETE = "task.complete"
    TASK_FAIL = "task.fail"


@dataclass
class TraceEvent:
    event_type: str
    source_agent: str
    timestamp: float = field(default_factory=time.time)
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "event_type": self.event_type,
            "metadata": {"source_agent": self.source_agent},
            "payload": self.payload,
        }
