"""Failure analysis and recovery.

FailureAnalyzer classifies an error with message rules and keeps a bounded
history of outcomes; the history feeds the `frequency` of later analyses.

RecoveryCoordinator picks the recovery action for a failed task and carries
it out. Decision table, first match wins:

1. breaker open for the task type   -> fail
2. permanent                        -> compensate if compensation tasks are declared, else fail
3. systemic                         -> degrade if a fallback task or reduced functionality is declared, else fail
4. resource                         -> retry, exponential backoff, 3 attempts
5. transient                        -> retry, linear backoff, policy attempts (default 2)
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from meshdag.config import DEFAULT_INITIAL_DELAY, DEFAULT_MAX_DELAY, FAILURE_HISTORY_LIMIT
from meshdag.errors import CircuitOpenError, OutputContractError, TaskTimeoutError, TaskValidationError
from meshdag.models import (
    FailureAnalysis, FailureHandlingResult, RetryPolicy, TaskExecutionResult, WorkflowTask,
)

if TYPE_CHECKING:
    from meshdag.breaker import CircuitBreaker
    from meshdag.events import EventBus
    from meshdag.executor import TaskExecutor

logger = logging.getLogger(__name__)

TaskLookup = Callable[[str], "WorkflowTask | None"]

_RULES = (
    ("transient", ("timeout", "timed out", "network", "connection")),
    ("permanent", ("not found", "invalid")),
    ("systemic", ("system", "service")),
    ("resource", ("memory", "cpu")),
)
_CRITICAL_MARKERS = ("critical", "fatal")
_SEVERITIES = ("low", "medium", "high", "critical")
_BASE_SEVERITY = {"transient": "low", "permanent": "medium", "systemic": "high", "resource": "high"}
_BASE_COMPLEXITY = {"transient": 1, "resource": 2, "permanent": 3, "systemic": 4}


@dataclass
class FailureRecord:
    task_id: str
    failure_type: str
    severity: str
    action: str
    success: bool
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "failure_type": self.failure_type,
            "severity": self.severity,
            "action": self.action,
            "success": self.success,
            "ts": self.ts,
        }


class FailureAnalyzer:
    """Rule-based failure classification with outcome history."""

    def __init__(self, history_limit: int = FAILURE_HISTORY_LIMIT, frequent_after: int = 5):
        self.frequent_after = frequent_after
        self._history: deque[FailureRecord] = deque(maxlen=history_limit)
        self._lock = threading.Lock()

    def classify(self, error: BaseException) -> str:
        if isinstance(error, (TaskTimeoutError, TimeoutError, ConnectionError)):
            return "transient"
        if isinstance(error, MemoryError):
            return "resource"
        if isinstance(error, (TaskValidationError, OutputContractError)):
            return "permanent"

        message = str(error).lower()
        for failure_type, markers in _RULES:
            if any(marker in message for marker in markers):
                return failure_type
        return "transient"

    def analyze_failure(self, task_id: str, error: BaseException, dependents: int = 0) -> FailureAnalysis:
        failure_type = self.classify(error)
        frequency = self.frequency(task_id) + 1

        message = str(error).lower()
        if any(marker in message for marker in _CRITICAL_MARKERS):
            severity = "critical"
        else:
            severity = _BASE_SEVERITY[failure_type]
            if frequency >= self.frequent_after:
                severity = _SEVERITIES[min(_SEVERITIES.index(severity) + 1, len(_SEVERITIES) - 1)]

        if severity == "critical" or dependents >= 3:
            impact = "high"
        elif severity == "high" or dependents > 0:
            impact = "medium"
        else:
            impact = "low"

        # Only used to rank operator attention.
        complexity = _BASE_COMPLEXITY[failure_type] + min(frequency - 1, 3) + (1 if dependents else 0)

        return FailureAnalysis(
            task_id=task_id,
            failure_type=failure_type,
            severity=severity,
            frequency=frequency,
            impact=impact,
            recovery_complexity=complexity,
        )

    def record(self, analysis: FailureAnalysis, action: str, success: bool):
        with self._lock:
            self._history.append(FailureRecord(
                task_id=analysis.task_id,
                failure_type=analysis.failure_type,
                severity=analysis.severity,
                action=action,
                success=success,
            ))

    def frequency(self, task_id: str) -> int:
        with self._lock:
            return sum(1 for r in self._history if r.task_id == task_id)

    def history(self, task_id: str | None = None) -> list[FailureRecord]:
        with self._lock:
            return [r for r in self._history if task_id is None or r.task_id == task_id]

    def patterns(self) -> dict[str, Any]:
        """Counts by failure type and by action, plus the most failing tasks."""
        records = self.history()
        return {
            "total": len(records),
            "by_type": dict(Counter(r.failure_type for r in records)),
            "by_action": dict(Counter(r.action for r in records)),
            "top_tasks": Counter(r.task_id for r in records).most_common(5),
        }


class RecoveryCoordinator:
    """Chooses and executes recovery actions for failed tasks."""

    def __init__(
        self,
        executor: "TaskExecutor",
        analyzer: FailureAnalyzer,
        breaker: "CircuitBreaker",
        event_bus: "EventBus | None" = None,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        transient_attempts: int = 2,
        resource_attempts: int = 3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.executor = executor
        self.analyzer = analyzer
        self.breaker = breaker
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.transient_attempts = transient_attempts
        self.resource_attempts = resource_attempts
        self._event_bus = event_bus
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def decide(
        self,
        task: WorkflowTask,
        error: BaseException,
        dependents: int = 0,
        continue_on_failure: bool = False,
    ) -> FailureHandlingResult:
        """Pick an action. With `continue_on_failure`, a plain fail becomes skip."""
        analysis = self.analyzer.analyze_failure(task.id, error, dependents)
        compensation = [str(t) for t in task.metadata.get("compensation_tasks") or []]
        breaker = self.breaker.status(task.type)

        if breaker.is_open or isinstance(error, CircuitOpenError):
            action = "fail"
        elif analysis.failure_type == "permanent":
            action = "compensate" if compensation else "fail"
        elif analysis.failure_type == "systemic":
            degradable = task.metadata.get("fallback_task") or task.metadata.get("reduced_functionality")
            action = "degrade" if degradable else "fail"
        else:
            action = "retry"

        if action == "fail" and continue_on_failure:
            action = "skip"

        logger.warning(
            f"Task {task.id} failed ({analysis.failure_type}, {analysis.severity}): {error}; action: {action}"
        )
        return FailureHandlingResult(
            success=action != "fail",
            task_id=task.id,
            action=action,
            compensation_tasks=compensation if action == "compensate" else [],
            error=error,
            analysis=analysis,
        )

    def recovery_policy(self, task: WorkflowTask, failure_type: str) -> RetryPolicy:
        if failure_type == "resource":
            return RetryPolicy(
                max_attempts=self.resource_attempts,
                backoff_strategy="exponential",
                initial_delay=self.initial_delay,
                max_delay=self.max_delay,
            )
        attempts = task.retry_policy.max_attempts if task.retry_policy else self.transient_attempts
        return RetryPolicy(
            max_attempts=attempts,
            backoff_strategy="linear",
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def recover(
        self,
        task: WorkflowTask,
        failed: TaskExecutionResult,
        lookup: TaskLookup,
        dependents: int = 0,
        continue_on_failure: bool = False,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> FailureHandlingResult:
        """Decide and carry out recovery for `failed`. The returned result holds the final outcome."""
        plan = self.decide(task, failed.error or RuntimeError("task failed"), dependents, continue_on_failure)
        return await self.carry_out(task, plan, failed, lookup, is_cancelled)

    async def carry_out(
        self,
        task: WorkflowTask,
        plan: FailureHandlingResult,
        failed: TaskExecutionResult | None,
        lookup: TaskLookup,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> FailureHandlingResult:
        if plan.action == "retry":
            outcome = await self._retry(task, plan, failed, is_cancelled)
        elif plan.action == "compensate":
            outcome = await self._compensate(task, plan, failed, lookup)
        elif plan.action == "degrade":
            outcome = await self._degrade(task, plan, failed, lookup)
        elif plan.action == "skip":
            outcome = replace(plan, result=self._skipped(task, plan.error, failed))
        else:
            outcome = replace(plan, success=False, result=failed)

        if plan.analysis:
            self.analyzer.record(plan.analysis, outcome.action, outcome.success)
        self._emit("task.failure.handled", **outcome.to_dict())
        return outcome

    async def _retry(
        self,
        task: WorkflowTask,
        plan: FailureHandlingResult,
        failed: TaskExecutionResult | None,
        is_cancelled: Callable[[], bool] | None,
    ) -> FailureHandlingResult:
        policy = self.recovery_policy(task, plan.analysis.failure_type)
        single = replace(task, retry_policy=RetryPolicy(max_attempts=0))
        previous_retries = failed.retry_count if failed else 0
        last = failed

        for attempt in range(policy.max_attempts):
            if is_cancelled and is_cancelled():
                break
            await self._sleep(policy.delay_for(attempt))
            if self.breaker.status(task.type).is_open:
                logger.warning(f"Recovery retry of {task.id} stopped: circuit open for '{task.type}'")
                break

            result = await self.executor.execute(single, is_cancelled=is_cancelled)
            last = replace(result, retry_count=previous_retries + attempt + 1)
            if result.success:
                logger.info(f"Task {task.id} recovered on retry {attempt + 1}")
                return replace(plan, success=True, result=last)

        logger.warning(f"Task {task.id} gave up after recovery retries")
        return replace(plan, success=False, result=last)

    async def _compensate(
        self,
        task: WorkflowTask,
        plan: FailureHandlingResult,
        failed: TaskExecutionResult | None,
        lookup: TaskLookup,
    ) -> FailureHandlingResult:
        completed: list[str] = []
        # Undo stack: last declared runs first.
        for comp_id in reversed(plan.compensation_tasks):
            comp_task = lookup(comp_id)
            if comp_task is None:
                logger.warning(f"Compensation task {comp_id} for {task.id} not found")
                continue
            result = await self.executor.execute(comp_task)
            if result.success:
                completed.append(comp_id)
            else:
                logger.warning(f"Compensation task {comp_id} for {task.id} failed: {result.error_message}")

        self._emit(
            "task.compensated",
            task_id=task.id,
            compensation_tasks=plan.compensation_tasks,
            completed=completed,
            partial=0 < len(completed) < len(plan.compensation_tasks),
        )
        return replace(plan, success=bool(completed), completed_compensations=completed, result=failed)

    async def _degrade(
        self,
        task: WorkflowTask,
        plan: FailureHandlingResult,
        failed: TaskExecutionResult | None,
        lookup: TaskLookup,
    ) -> FailureHandlingResult:
        fallback_id = task.metadata.get("fallback_task")
        if fallback_id:
            fallback = lookup(fallback_id)
            if fallback is not None:
                result = await self.executor.execute(fallback)
                if result.success:
                    self._emit("task.degraded", task_id=task.id, fallback_task=fallback_id)
                    return replace(plan, success=True, result=replace(
                        result, task_id=task.id, degraded=True, workflow_id=task.workflow_id,
                    ))
                logger.warning(f"Fallback task {fallback_id} for {task.id} failed: {result.error_message}")
            else:
                logger.warning(f"Fallback task {fallback_id} for {task.id} not found")

        if task.metadata.get("reduced_functionality"):
            now = time.time()
            self._emit("task.degraded", task_id=task.id, reduced_functionality=True)
            return replace(plan, success=True, result=TaskExecutionResult(
                task_id=task.id,
                success=True,
                output={"reduced_functionality": True},
                error=plan.error,
                start_time=failed.start_time if failed else now,
                end_time=now,
                duration=now - (failed.start_time if failed else now),
                retry_count=failed.retry_count if failed else 0,
                status="completed",
                attempts=failed.attempts if failed else (),
                degraded=True,
                workflow_id=task.workflow_id,
            ))

        return replace(plan, success=False, result=failed)

    def _skipped(
        self,
        task: WorkflowTask,
        error: BaseException | None,
        failed: TaskExecutionResult | None,
    ) -> TaskExecutionResult:
        now = time.time()
        self._emit("task.skipped", task_id=task.id)
        return TaskExecutionResult(
            task_id=task.id,
            success=False,
            output=None,
            error=error,
            start_time=failed.start_time if failed else now,
            end_time=now,
            duration=now - (failed.start_time if failed else now),
            retry_count=failed.retry_count if failed else 0,
            status="cancelled",
            attempts=failed.attempts if failed else (),
            skipped=True,
            workflow_id=task.workflow_id,
        )

    def _emit(self, event_type: str, **payload):
        if self._event_bus:
            self._event_bus.emit_simple(event_type, **payload)
