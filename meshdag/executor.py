"""Task executor: preconditions, circuit breaker, retry/backoff and output contracts.

One call to `execute` runs one task snapshot to a TaskExecutionResult. Errors
from the task body never escape; they end up on the result. Recovery beyond
the task's own retry policy is decided elsewhere.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping

from meshdag.config import (
    DEFAULT_INITIAL_DELAY, DEFAULT_MAX_DELAY, DEFAULT_RETRY_ATTEMPTS, OUTPUT_CONTRACTS,
)
from meshdag.errors import (
    CircuitOpenError, OutputContractError, TaskCancelledError, TaskTimeoutError, TaskValidationError,
)
from meshdag.models import RetryPolicy, TaskExecutionResult, WorkflowTask

if TYPE_CHECKING:
    from meshdag.breaker import CircuitBreaker
    from meshdag.events import EventBus
    from meshdag.runners import TaskRunnerRegistry

logger = logging.getLogger(__name__)


class TaskExecutor:
    """Runs task snapshots through their runner under a retry policy."""

    def __init__(
        self,
        registry: "TaskRunnerRegistry",
        breaker: "CircuitBreaker",
        event_bus: "EventBus | None" = None,
        contracts: Mapping[str, list[str]] | None = None,
        default_retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.breaker = breaker
        self.contracts = dict(OUTPUT_CONTRACTS if contracts is None else contracts)
        self.default_retry_attempts = default_retry_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._event_bus = event_bus
        self._sleep = sleep
        self._clock = clock

    def default_retry_policy(self, attempts: int | None = None) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.default_retry_attempts if attempts is None else attempts,
            backoff_strategy="exponential",
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
        )

    # ------------------------------------------------------------------
    # Preconditions and postconditions
    # ------------------------------------------------------------------

    def validate(self, task: WorkflowTask, dependency_check: Callable[[str], bool] | None = None):
        """Raise TaskValidationError if the task cannot be attempted at all."""
        if dependency_check is not None:
            missing = [d for d in task.dependencies if not dependency_check(d)]
            if missing:
                raise TaskValidationError(task.id, f"unresolved dependencies: {', '.join(missing)}")
        if task.parameters is None:
            raise TaskValidationError(task.id, "parameters are missing")
        if not self.registry.supports(task.type):
            raise TaskValidationError(task.id, f"unsupported task type '{task.type}'")

    def validate_output(self, task: WorkflowTask, output: Any):
        """Raise OutputContractError if `output` lacks the keys its type requires."""
        required = self.contracts.get(task.type)
        if not required:
            return
        if not isinstance(output, Mapping):
            raise OutputContractError(task.id, task.type, [])
        missing = [key for key in required if key not in output]
        if missing:
            raise OutputContractError(task.id, task.type, missing)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        task: WorkflowTask,
        dependency_check: Callable[[str], bool] | None = None,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> TaskExecutionResult:
        """Validate, consult the breaker, run with retries, check the output, report."""
        task = task.snapshot()
        start = self._clock()
        attempts: list[float] = []

        try:
            self.validate(task, dependency_check)
        except TaskValidationError as e:
            logger.warning(str(e))
            return self._finish(task, start, attempts, status="failed", error=e)

        breaker = self.breaker.check(task.type)
        if breaker.is_open:
            error = CircuitOpenError(task.type, breaker.current_failures, breaker.cooldown)
            logger.warning(f"Task {task.id} rejected: {error}")
            return self._finish(task, start, attempts, status="failed", error=error)

        policy = task.retry_policy or self.default_retry_policy()
        try:
            output = await self._run_with_retry(task, policy, attempts, is_cancelled)
            self.validate_output(task, output)
        except TaskCancelledError as e:
            self.breaker.release(task.type)
            return self._finish(task, start, attempts, status="cancelled", error=e)
        except asyncio.CancelledError:
            self.breaker.release(task.type)
            raise
        except Exception as e:
            self.breaker.record_failure(task.type)
            return self._finish(task, start, attempts, status="failed", error=e)

        self.breaker.record_success(task.type)
        return self._finish(task, start, attempts, status="completed", output=output)

    async def _run_with_retry(
        self,
        task: WorkflowTask,
        policy: RetryPolicy,
        attempts: list[float],
        is_cancelled: Callable[[], bool] | None,
    ) -> Any:
        last_error: Exception | None = None
        for attempt in range(max(policy.max_attempts, 0) + 1):
            if attempt and is_cancelled and is_cancelled():
                raise TaskCancelledError(task.id)

            attempts.append(self._clock())
            try:
                return await self._attempt(task)
            except Exception as e:
                last_error = e
                if attempt >= policy.max_attempts:
                    break
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"Task {task.id} attempt {attempt + 1}/{policy.max_attempts + 1} failed: {e}; "
                    f"retrying in {delay:g}s"
                )
                self._emit(
                    "task.retry",
                    task_id=task.id,
                    task_type=task.type,
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(e),
                )
                await self._sleep(delay)

        logger.warning(f"Task {task.id} failed after {len(attempts)} attempts: {last_error}")
        raise last_error

    async def _attempt(self, task: WorkflowTask) -> Any:
        if not task.timeout or task.timeout <= 0:
            return await self.registry.run(task)
        try:
            return await asyncio.wait_for(self.registry.run(task), timeout=task.timeout)
        except asyncio.TimeoutError:
            raise TaskTimeoutError(task.id, task.timeout) from None

    def _finish(
        self,
        task: WorkflowTask,
        start: float,
        attempts: list[float],
        status: str,
        output: Any = None,
        error: BaseException | None = None,
    ) -> TaskExecutionResult:
        end = self._clock()
        result = TaskExecutionResult(
            task_id=task.id,
            success=status == "completed",
            output=output,
            error=error,
            start_time=start,
            end_time=end,
            duration=end - start,
            retry_count=max(len(attempts) - 1, 0),
            status=status,
            attempts=tuple(attempts),
            workflow_id=task.workflow_id,
        )
        event_type = {"completed": "task.executed", "cancelled": "task.cancelled"}.get(status, "task.failed")
        self._emit(event_type, task_type=task.type, **result.to_dict())
        return result

    def _emit(self, event_type: str, **payload):
        if self._event_bus:
            self._event_bus.emit_simple(event_type, **payload)
