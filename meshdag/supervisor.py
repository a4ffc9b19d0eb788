"""Workflow supervisor: owns DAG instances, drives their lifecycle, aggregates metrics.

Every operation callers reach through events or the gateway lives here. The
supervisor wires the resolver, executor, breaker and recovery together and
keeps all runtime state in the injected store.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping, assert_never

from meshdag.breaker import CircuitBreaker
from meshdag.config import (
    DEFAULT_MAX_CONCURRENCY, DEFAULT_TASK_TIMEOUT, POLL_INTERVAL, SOURCE_AGENT, THROUGHPUT_WINDOW,
    TRACE_LOG_FILE,
)
from meshdag.errors import DAGValidationError, InvalidTransitionError, NotFoundError
from meshdag.events import EventBus
from meshdag.executor import TaskExecutor
from meshdag.failures import FailureAnalyzer, RecoveryCoordinator
from meshdag.models import (
    DAGInstance, DAGSpec, DependencyInfo, DependencyResolutionResult, EventKind, FailureHandlingResult,
    OrchestrationMetrics, OrchestrationResult, TaskExecutionResult, TaskStatus, ValidationResult,
    WorkflowExecution, WorkflowExecutionResult, WorkflowNode, WorkflowStatus, WorkflowTask, generate_id,
)
from meshdag.resolver import DependencyResolver
from meshdag.runners import TaskRunnerRegistry, create_default_registry
from meshdag.scheduler import PollLoop, Scheduler
from meshdag.store import InMemoryStore, WorkflowStore
from meshdag.validation import validate_dag

logger = logging.getLogger(__name__)

# Lifecycle: created -> running -> {paused, completed, failed, cancelled}; paused -> running
_TRANSITIONS = {
    "created": {"running", "cancelled"},
    "running": {"paused", "completed", "failed", "cancelled"},
    "paused": {"running", "cancelled"},
}


class WorkflowSupervisor:
    """Owns every DAGInstance and the tasks derived from it."""

    def __init__(
        self,
        store: WorkflowStore | None = None,
        registry: TaskRunnerRegistry | None = None,
        event_bus: EventBus | None = None,
        breaker: CircuitBreaker | None = None,
        resolver: DependencyResolver | None = None,
        executor: TaskExecutor | None = None,
        analyzer: FailureAnalyzer | None = None,
        recovery: RecoveryCoordinator | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        task_timeout: float = DEFAULT_TASK_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        throughput_window: float = THROUGHPUT_WINDOW,
        tick_interval: float = 0.05,
    ):
        self.store = store or InMemoryStore()
        self.event_bus = event_bus or EventBus(source_agent=SOURCE_AGENT, log_file=TRACE_LOG_FILE)
        self.breaker = breaker or CircuitBreaker(event_bus=self.event_bus)
        self.resolver = resolver or DependencyResolver()
        self.executor = executor or TaskExecutor(
            registry or create_default_registry(), self.breaker, event_bus=self.event_bus,
        )
        self.analyzer = analyzer or FailureAnalyzer()
        self.recovery = recovery or RecoveryCoordinator(
            self.executor, self.analyzer, self.breaker, event_bus=self.event_bus,
        )
        self.max_concurrency = max_concurrency
        self.task_timeout = task_timeout
        self.throughput_window = throughput_window
        self.tick_interval = tick_interval

        self._queue: list[WorkflowTask] = []
        self._poll = PollLoop(self.execute_scheduled_tasks, interval=poll_interval)
        self._running_tasks: dict[str, float] = {}  # task id -> start time
        self._unrecovered: dict[str, int] = {}  # workflow id -> unrecovered failures
        self._pending_recoveries: dict[str, set[asyncio.Task]] = {}
        self._active_runs: set[str] = set()  # workflows whose scheduler is still looping

    # ------------------------------------------------------------------
    # Service lifecycle
    # ------------------------------------------------------------------

    async def initialize(self):
        self.start()
        self.event_bus.emit_simple("agent.initialized", poll_interval=self._poll.interval)
        logger.info("Workflow supervisor initialized")

    async def shutdown(self):
        await self.stop()
        background = self._background_recoveries()
        for task in background:
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)
        self.event_bus.emit_simple("agent.shutdown", cancelled_recoveries=len(background))
        logger.info("Workflow supervisor shut down")

    async def drain_recoveries(self, workflow_id: str | None = None):
        """Wait for background recoveries, for one workflow or for all."""
        background = self._background_recoveries(workflow_id)
        if background:
            await asyncio.gather(*background)

    def _background_recoveries(self, workflow_id: str | None = None) -> list[asyncio.Task]:
        if workflow_id is not None:
            return list(self._pending_recoveries.get(workflow_id, ()))
        return [t for tasks in self._pending_recoveries.values() for t in tasks]

    def start(self):
        """Start the poll loop that drains scheduled tasks."""
        self._poll.start()

    async def stop(self):
        await self._poll.stop()

    # ------------------------------------------------------------------
    # DAG management
    # ------------------------------------------------------------------

    def validate_dag(self, spec: DAGSpec | Mapping[str, Any]) -> ValidationResult:
        return validate_dag(_as_spec(spec))

    def create_dag(self, spec: DAGSpec | Mapping[str, Any]) -> DAGInstance:
        """Validate `spec` and register a DAGInstance in `created`. Raises DAGValidationError."""
        spec = _as_spec(spec)
        validation = validate_dag(spec)
        if validation.result and self.store.get_instance(spec.id) is not None:
            validation = ValidationResult(
                False, f"DAG {spec.id} already exists", {"type": "duplicate_dag", "dag_id": spec.id},
            )
        if not validation.result:
            logger.warning(f"Rejected DAG {spec.id or '<no id>'}: {validation.reason}")
            raise DAGValidationError(validation)

        infos = _dependency_infos(spec)
        instance = DAGInstance(spec=spec)
        self.store.save_instance(instance)
        self.resolver.register(*infos)
        self.event_bus.emit_simple(
            "dag.created", workflow_id=spec.id, name=spec.name, version=spec.version, nodes=len(spec.nodes),
        )
        logger.info(f"DAG {spec.id} created ({len(spec.nodes)} nodes)")
        return instance

    def update_dag(self, workflow_id: str, changes: DAGSpec | Mapping[str, Any]) -> DAGInstance:
        """Replace the spec of a DAG that has not started yet. The merged spec must re-validate."""
        instance = self._instance(workflow_id)
        if instance.status != "created":
            raise InvalidTransitionError(workflow_id, instance.status, "updated")

        if isinstance(changes, DAGSpec):
            merged = changes
        else:
            data = instance.spec.to_dict()
            data.update(changes)
            merged = DAGSpec.from_dict(data)
        if merged.id != workflow_id:
            raise DAGValidationError(ValidationResult(
                False, f"DAG id cannot change ({workflow_id} -> {merged.id})", {"type": "immutable_id"},
            ))

        validation = validate_dag(merged)
        if not validation.result:
            logger.warning(f"Rejected update of DAG {workflow_id}: {validation.reason}")
            raise DAGValidationError(validation)

        infos = _dependency_infos(merged)
        self.resolver.unregister(*(n.id for n in instance.spec.nodes))
        instance.spec = merged
        self.store.save_instance(instance)
        self.resolver.register(*infos)
        self.event_bus.emit_simple("dag.updated", workflow_id=workflow_id, version=merged.version)
        logger.info(f"DAG {workflow_id} updated to version {merged.version}")
        return instance

    def resolve_dependencies(self, ids: list[str], workflow_id: str | None = None) -> DependencyResolutionResult:
        """Resolve ids against one workflow's nodes, or against every registered node."""
        catalog = None
        if workflow_id is not None:
            catalog = {info.id: info for info in _dependency_infos(self._instance(workflow_id).spec)}
        result = self.resolver.resolve(ids, catalog=catalog)
        self.event_bus.emit_simple(
            "dependencies.resolved",
            workflow_id=workflow_id,
            success=result.success,
            execution_order=result.execution_order,
            unresolved=result.unresolved_dependencies,
            circular=result.circular_dependencies,
            conflicts=len(result.conflicts),
        )
        return result

    # ------------------------------------------------------------------
    # Workflow lifecycle
    # ------------------------------------------------------------------

    async def orchestrate_workflow(self, spec: DAGSpec | Mapping[str, Any]) -> OrchestrationResult:
        """Create and run a DAG in one call. Validation failures come back as a failed result."""
        spec = _as_spec(spec)
        try:
            self.create_dag(spec)
        except DAGValidationError as e:
            return OrchestrationResult(
                success=False,
                workflow_id=spec.id,
                execution_id="",
                status="failed",
                errors=[str(e)],
                metrics=self.get_system_metrics(),
            )

        run = await self.start_workflow(spec.id)
        return OrchestrationResult(
            success=run.success,
            workflow_id=run.workflow_id,
            execution_id=run.execution_id,
            status=run.status,
            tasks=run.tasks,
            errors=run.errors,
            warnings=run.warnings,
            metrics=self.get_system_metrics(),
        )

    async def start_workflow(self, workflow_id: str) -> WorkflowExecutionResult:
        """Run a created workflow to the end of scheduling and settle its status."""
        instance = self._instance(workflow_id)
        spec = instance.spec
        # Resolve before the transition so a resolver error leaves the instance untouched.
        resolution = self.resolver.resolve(
            [n.id for n in spec.task_nodes()],
            catalog={info.id: info for info in _dependency_infos(spec)},
        )

        self._transition(instance, "running")
        instance.started_at = time.time()
        execution = WorkflowExecution(execution_id=instance.execution_id, workflow_id=workflow_id)
        self.store.save_execution(execution)
        self._unrecovered[workflow_id] = 0
        execution.warnings.extend(f"{c.description}; {c.resolution}" for c in resolution.conflicts)

        self.event_bus.emit_simple(
            "workflow.started", workflow_id=workflow_id, execution_id=instance.execution_id,
            execution_order=resolution.execution_order,
        )
        logger.info(f"Workflow {workflow_id} started ({len(spec.task_nodes())} tasks)")

        if not resolution.success:
            execution.errors.append(
                f"Dependency resolution failed: unresolved {resolution.unresolved_dependencies}, "
                f"circular {resolution.circular_dependencies}, {len(resolution.conflicts)} conflicts"
            )
            self._finish(instance, "failed")
            return self._execution_result(instance, {})

        tasks = self._materialize(spec, resolution.execution_order)
        task_ids = {t.id for t in tasks}
        for task in tasks:
            self.store.save_task(task)

        policy = spec.execution_policy
        scheduler = Scheduler(
            tasks,
            execute=lambda task: self._run_workflow_task(instance, task, task_ids),
            status=lambda: instance.status,
            max_concurrency=policy.max_concurrency,
            tick_interval=self.tick_interval,
            deadline=instance.started_at + policy.timeout if policy.timeout > 0 else None,
            should_stop=lambda: self._should_stop(instance),
        )
        self._active_runs.add(workflow_id)
        try:
            results = await scheduler.run()
        finally:
            self._active_runs.discard(workflow_id)

        # Results the scheduler produced without running a task (upstream failure, cancel, timeout).
        for task_id, result in results.items():
            if execution.latest(task_id) is None:
                self.store.append_result(execution.execution_id, result)

        if instance.status == "cancelled":
            return self._execution_result(instance, results)

        if self._unrecovered[workflow_id] and spec.failure_handling.strategy == "compensate":
            await self._compensate_workflow(instance)

        halted = self._should_stop(instance) or (
            scheduler.deadline is not None and time.time() >= scheduler.deadline
        )
        self._settle(instance, halted=halted)
        return self._execution_result(instance, results)

    def pause_workflow(self, workflow_id: str) -> bool:
        return self._guarded(workflow_id, "paused", "workflow.paused")

    def resume_workflow(self, workflow_id: str) -> bool:
        instance = self.store.get_instance(workflow_id)
        if instance is None or instance.status != "paused":
            logger.warning(f"Cannot resume workflow {workflow_id}: not paused")
            return False
        if not self._guarded(workflow_id, "running", "workflow.resumed"):
            return False
        if workflow_id not in self._active_runs and instance.started_at:
            # Paused after its last task finished; nothing else will settle it.
            self._settle(instance)
        return True

    def cancel_workflow(self, workflow_id: str) -> bool:
        return self._guarded(workflow_id, "cancelled", "workflow.cancelled")

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def schedule_task(self, task: WorkflowTask | Mapping[str, Any]) -> str:
        """Queue a task for the poll loop. Returns its id."""
        if not isinstance(task, WorkflowTask):
            task = WorkflowTask.from_dict(task)
        if not task.id:
            task.id = f"task-{generate_id()}"
        self.store.save_task(task)
        self._queue.append(task)
        self.event_bus.emit_simple("task.scheduled", task_id=task.id, task_type=task.type, queued=len(self._queue))
        return task.id

    async def execute_scheduled_tasks(self) -> list[TaskExecutionResult]:
        """Drain the scheduled-task queue in dependency waves."""
        results: list[TaskExecutionResult] = []
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(task: WorkflowTask) -> TaskExecutionResult:
            async with semaphore:
                return await self.execute_task(task.id)

        while self._queue:
            queued = {t.id for t in self._queue}
            wave = [t for t in self._queue if not any(d in queued for d in t.dependencies)]
            if not wave:
                # Queued tasks wait on each other; let validation reject them.
                wave = list(self._queue)
            self._queue = [t for t in self._queue if t not in wave]
            results.extend(await asyncio.gather(*(run(t) for t in wave)))
        return results

    async def execute_task(self, task_id: str) -> TaskExecutionResult:
        """Execute a stored task with recovery. Its dependencies must already have usable results."""
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFoundError("task", task_id)

        def dependency_ready(dep_id: str) -> bool:
            result = self.store.latest_result(dep_id)
            return result is not None and result.satisfies_dependents

        instance = self.store.get_instance(task.workflow_id) if task.workflow_id else None
        execution_id = instance.execution_id if instance else f"task-{task.id}"
        result = await self._execute_with_recovery(task, instance, dependency_ready)
        self.store.append_result(execution_id, result)
        return result

    async def handle_task_failure(self, task_id: str, error: BaseException) -> FailureHandlingResult:
        """Decide recovery for a reported failure and carry it out in the background."""
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFoundError("task", task_id)

        instance = self.store.get_instance(task.workflow_id) if task.workflow_id else None
        plan = self.recovery.decide(
            task, error, dependents=self._dependents(instance, task.id),
            continue_on_failure=self._continue_on_failure(instance),
        )
        if plan.action == "fail":
            self.analyzer.record(plan.analysis, plan.action, False)
            self._report_unrecovered(instance, task.id, error)
            return plan

        failed = self.store.latest_result(task_id)
        key = task.workflow_id or ""
        background = asyncio.create_task(self._recover_in_background(task, instance, plan, failed))
        self._pending_recoveries.setdefault(key, set()).add(background)
        background.add_done_callback(self._pending_recoveries[key].discard)
        return plan

    # ------------------------------------------------------------------
    # Status and metrics
    # ------------------------------------------------------------------

    def get_workflow_status(self, workflow_id: str) -> WorkflowStatus:
        instance = self.store.get_instance(workflow_id)
        if instance is None:
            return WorkflowStatus(workflow_id=workflow_id, status="not_found")

        results = self._latest_results(instance)
        total = len(instance.spec.task_nodes())
        done = sum(1 for r in results.values() if r.satisfies_dependents)
        failed = sum(1 for r in results.values() if not r.satisfies_dependents)
        progress = done / total * 100 if total else (100.0 if instance.status == "completed" else 0.0)

        estimated = None
        if instance.completed_at:
            estimated = instance.completed_at
        elif instance.started_at and 0 < progress < 100:
            elapsed = time.time() - instance.started_at
            estimated = instance.started_at + elapsed * 100 / progress

        return WorkflowStatus(
            workflow_id=workflow_id,
            status=instance.status,
            progress=round(progress, 2),
            completed_tasks=done,
            total_tasks=total,
            failed_tasks=failed,
            start_time=instance.started_at,
            estimated_completion=estimated,
        )

    def get_task_status(self, task_id: str) -> TaskStatus:
        if task_id in self._running_tasks:
            return TaskStatus(task_id=task_id, status="running", progress=50, start_time=self._running_tasks[task_id])

        result = self.store.latest_result(task_id)
        if result is None:
            if self.store.get_task(task_id) is None:
                return TaskStatus(task_id=task_id, status="not_found")
            return TaskStatus(task_id=task_id, status="pending")

        return TaskStatus(
            task_id=task_id,
            status=result.status,
            progress=100 if result.status == "completed" else 0,
            start_time=result.start_time,
            end_time=result.end_time,
            retry_count=result.retry_count,
            error=result.error_message,
        )

    def get_system_metrics(self) -> OrchestrationMetrics:
        instances = self.store.instances()
        results = self.store.all_results()
        now = time.time()

        finished = [i for i in instances if i.started_at and i.completed_at]
        durations = [i.completed_at - i.started_at for i in finished]
        completed = sum(1 for r in results if r.status == "completed")

        return OrchestrationMetrics(
            active_workflows=sum(1 for i in instances if i.status in ("running", "paused")),
            completed_workflows=sum(1 for i in instances if i.status == "completed"),
            failed_workflows=sum(1 for i in instances if i.status == "failed"),
            average_execution_time=sum(durations) / len(durations) if durations else 0.0,
            total_tasks_executed=len(results),
            success_rate=completed / len(results) if results else 0.0,
            throughput=sum(1 for r in results if r.end_time >= now - self.throughput_window),
        )

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def handle_event(self, kind: EventKind | str, payload: Mapping[str, Any] | None = None) -> Any:
        """Dispatch an inbound event to the matching operation."""
        payload = dict(payload or {})
        try:
            kind = EventKind(kind)
        except ValueError:
            self.event_bus.emit_simple("unknown.event.received", event_type=str(kind), payload=payload)
            raise ValueError(f"Unknown event type: {kind}") from None

        match kind:
            case EventKind.WORKFLOW_START:
                return await self.start_workflow(_required(payload, "workflow_id"))
            case EventKind.WORKFLOW_PAUSE:
                return self.pause_workflow(_required(payload, "workflow_id"))
            case EventKind.WORKFLOW_RESUME:
                return self.resume_workflow(_required(payload, "workflow_id"))
            case EventKind.WORKFLOW_CANCEL:
                return self.cancel_workflow(_required(payload, "workflow_id"))
            case EventKind.TASK_EXECUTE:
                return await self.execute_task(_required(payload, "task_id"))
            case EventKind.TASK_COMPLETE | EventKind.TASK_FAIL:
                self.event_bus.emit_simple(f"{kind.value}.received", **payload)
                return None
            case _:
                assert_never(kind)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _instance(self, workflow_id: str) -> DAGInstance:
        instance = self.store.get_instance(workflow_id)
        if instance is None:
            raise NotFoundError("workflow", workflow_id)
        return instance

    def _transition(self, instance: DAGInstance, target: str):
        if target not in _TRANSITIONS.get(instance.status, set()):
            raise InvalidTransitionError(instance.id, instance.status, target)
        instance.status = target
        self.store.save_instance(instance)

    def _guarded(self, workflow_id: str, target: str, event_type: str) -> bool:
        instance = self.store.get_instance(workflow_id)
        if instance is None:
            logger.warning(f"Cannot move workflow {workflow_id} to {target}: not found")
            return False
        try:
            self._transition(instance, target)
        except InvalidTransitionError as e:
            logger.warning(str(e))
            return False
        if target == "cancelled":
            instance.completed_at = time.time()
        self.event_bus.emit_simple(event_type, workflow_id=workflow_id, execution_id=instance.execution_id)
        logger.info(f"Workflow {workflow_id} {target}")
        return True

    def _finish(self, instance: DAGInstance, status: str):
        self._transition(instance, status)
        instance.completed_at = time.time()
        execution = self.store.get_execution(instance.execution_id)
        if execution:
            execution.completed_at = instance.completed_at
        self.event_bus.emit_simple(
            f"workflow.{status}",
            workflow_id=instance.id,
            execution_id=instance.execution_id,
            duration=instance.completed_at - (instance.started_at or instance.completed_at),
        )
        logger.info(f"Workflow {instance.id} {status}")

    def _settle(self, instance: DAGInstance, halted: bool = False):
        """Move a running workflow to completed or failed once its outcome is final.

        Completed: every task node has a usable result and no recovery is
        pending. Failed: no task produced a usable result, or scheduling was
        halted after failures. Anything else is partial failure and stays running.
        """
        if instance.status != "running":
            return
        nodes = instance.spec.task_nodes()
        results = self._latest_results(instance)
        if len(results) < len(nodes) or self._pending_recoveries.get(instance.id):
            return

        usable = sum(1 for r in results.values() if r.satisfies_dependents)
        if usable == len(nodes):
            self._finish(instance, "completed")
        elif usable == 0 or halted:
            self._finish(instance, "failed")
        else:
            logger.info(f"Workflow {instance.id} partially failed ({usable}/{len(nodes)} usable); left running")

    def _latest_results(self, instance: DAGInstance) -> dict[str, TaskExecutionResult]:
        execution = self.store.get_execution(instance.execution_id)
        if execution is None:
            return {}
        results = {}
        for node in instance.spec.task_nodes():
            result = execution.latest(node.id)
            if result is not None:
                results[node.id] = result
        return results

    def _should_stop(self, instance: DAGInstance) -> bool:
        failures = self._unrecovered.get(instance.id, 0)
        if not failures:
            return False
        if instance.spec.failure_handling.strategy == "stop":
            return True
        threshold = instance.spec.execution_policy.failure_threshold
        return threshold > 0 and failures >= threshold

    @staticmethod
    def _continue_on_failure(instance: DAGInstance | None) -> bool:
        return instance is not None and instance.spec.failure_handling.strategy == "continue"

    @staticmethod
    def _dependents(instance: DAGInstance | None, task_id: str) -> int:
        if instance is None:
            return 0
        return sum(1 for n in instance.spec.task_nodes() if task_id in n.dependencies)

    def _materialize(self, spec: DAGSpec, order: list[str]) -> list[WorkflowTask]:
        """One WorkflowTask per scheduled task node, in resolution order."""
        scheduled = {n.id for n in spec.task_nodes()}
        return [self._to_task(spec, spec.node(node_id), scheduled) for node_id in order if node_id in scheduled]

    def _to_task(self, spec: DAGSpec, node: WorkflowNode, scheduled: set[str]) -> WorkflowTask:
        policy = spec.execution_policy
        return WorkflowTask(
            id=node.id,
            name=node.name,
            type=node.task_type or "default",
            parameters=dict(node.parameters),
            dependencies=_task_dependencies(spec, node, scheduled),
            timeout=node.timeout or self.task_timeout,
            retry_policy=node.retry_policy or self.executor.default_retry_policy(policy.retry_attempts),
            metadata=dict(node.metadata),
            workflow_id=spec.id,
        )

    def _lookup(self, instance: DAGInstance | None):
        """Materialize compensation and fallback tasks on demand."""
        def lookup(task_id: str) -> WorkflowTask | None:
            if instance is not None:
                node = instance.spec.node(task_id)
                if node is not None and node.type == "task":
                    return self._to_task(instance.spec, node, set())
            return self.store.get_task(task_id)
        return lookup

    async def _run_workflow_task(self, instance: DAGInstance, task: WorkflowTask, task_ids: set[str]) -> TaskExecutionResult:
        result = await self._execute_with_recovery(task, instance, lambda dep_id: dep_id in task_ids)
        self.store.append_result(instance.execution_id, result)
        return result

    async def _execute_with_recovery(
        self,
        task: WorkflowTask,
        instance: DAGInstance | None,
        dependency_check,
    ) -> TaskExecutionResult:
        def is_cancelled() -> bool:
            return instance is not None and instance.status == "cancelled"

        self._running_tasks[task.id] = time.time()
        try:
            result = await self.executor.execute(task, dependency_check=dependency_check, is_cancelled=is_cancelled)
            if result.status == "failed":
                outcome = await self.recovery.recover(
                    task,
                    result,
                    self._lookup(instance),
                    dependents=self._dependents(instance, task.id),
                    continue_on_failure=self._continue_on_failure(instance),
                    is_cancelled=is_cancelled,
                )
                result = outcome.result or result
                if not result.satisfies_dependents:
                    self._report_unrecovered(instance, task.id, result.error)
        finally:
            self._running_tasks.pop(task.id, None)

        if result.status == "completed":
            self.event_bus.emit_simple(
                "task.completed", task_id=task.id, workflow_id=task.workflow_id,
                degraded=result.degraded, retry_count=result.retry_count,
            )
        return result

    async def _recover_in_background(
        self,
        task: WorkflowTask,
        instance: DAGInstance | None,
        plan: FailureHandlingResult,
        failed: TaskExecutionResult | None,
    ):
        outcome = await self.recovery.carry_out(
            task, plan, failed, self._lookup(instance),
            is_cancelled=lambda: instance is not None and instance.status == "cancelled",
        )
        if outcome.result is not None and outcome.result is not failed:
            execution_id = instance.execution_id if instance else f"task-{task.id}"
            self.store.append_result(execution_id, outcome.result)
        if not outcome.success:
            self._report_unrecovered(instance, task.id, outcome.error)
        if instance is not None:
            # This task is still in the pending set until the callback runs.
            self._pending_recoveries.get(instance.id, set()).discard(asyncio.current_task())
            self._settle(instance)

    def _report_unrecovered(self, instance: DAGInstance | None, task_id: str, error: BaseException | None):
        channels: list[str] = []
        if instance is not None:
            self._unrecovered[instance.id] = self._unrecovered.get(instance.id, 0) + 1
            channels = list(instance.spec.failure_handling.notification_channels)
            execution = self.store.get_execution(instance.execution_id)
            if execution:
                execution.errors.append(f"{task_id}: {error}")
        self.event_bus.emit_simple(
            "workflow.notification",
            workflow_id=instance.id if instance else None,
            task_id=task_id,
            channels=channels,
            error=str(error) if error else None,
        )

    async def _compensate_workflow(self, instance: DAGInstance):
        """Run the DAG's compensation tasks, last declared first."""
        lookup = self._lookup(instance)
        completed: list[str] = []
        for task_id in reversed(instance.spec.failure_handling.compensation_tasks):
            task = lookup(task_id)
            if task is None:
                logger.warning(f"Workflow compensation task {task_id} not found")
                continue
            result = await self.executor.execute(task)
            self.store.append_result(instance.execution_id, result)
            if result.success:
                completed.append(task_id)
            else:
                logger.warning(f"Workflow compensation task {task_id} failed: {result.error_message}")
        self.event_bus.emit_simple(
            "workflow.compensated",
            workflow_id=instance.id,
            compensation_tasks=list(instance.spec.failure_handling.compensation_tasks),
            completed=completed,
        )

    def _execution_result(
        self,
        instance: DAGInstance,
        results: Mapping[str, TaskExecutionResult],
    ) -> WorkflowExecutionResult:
        execution = self.store.get_execution(instance.execution_id)
        ordered = [results[t] for t in results]
        warnings = list(execution.warnings) if execution else []
        warnings.extend(f"{r.task_id} skipped" for r in ordered if r.skipped)
        warnings.extend(f"{r.task_id} degraded" for r in ordered if r.degraded)
        unrecovered = [r for r in ordered if not r.satisfies_dependents]
        return WorkflowExecutionResult(
            success=instance.status in ("running", "completed") and not unrecovered
            and not (execution and execution.errors),
            workflow_id=instance.id,
            execution_id=instance.execution_id,
            status=instance.status,
            tasks=ordered,
            errors=list(execution.errors) if execution else [],
            warnings=warnings,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _as_spec(spec: DAGSpec | Mapping[str, Any]) -> DAGSpec:
    return spec if isinstance(spec, DAGSpec) else DAGSpec.from_dict(spec)


def _required(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None:
        camel = key.split("_")[0] + "".join(p.title() for p in key.split("_")[1:])
        value = payload.get(camel)
    if not value:
        raise ValueError(f"Event payload missing '{key}'")
    return str(value)


def _task_dependencies(spec: DAGSpec, node: WorkflowNode, scheduled: set[str]) -> list[str]:
    """Dependencies on scheduled task nodes, looking through gateway/event/subprocess nodes."""
    result: list[str] = []
    seen: set[str] = set()
    stack = list(node.dependencies)
    while stack:
        dep_id = stack.pop(0)
        if dep_id in seen:
            continue
        seen.add(dep_id)
        if dep_id in scheduled:
            result.append(dep_id)
            continue
        dep = spec.node(dep_id)
        if dep is not None:
            stack.extend(dep.dependencies)
    return result


def _dependency_infos(spec: DAGSpec) -> list[DependencyInfo]:
    """DependencyInfo for every node, from the engine's node metadata keys."""
    infos = []
    for node in spec.nodes:
        meta = node.metadata
        resources = meta.get("resources") or []
        infos.append(DependencyInfo(
            id=node.id,
            version=meta.get("version"),
            dependencies=list(node.dependencies),
            resources=[resources] if isinstance(resources, str) else list(resources),
            priority=meta.get("priority") or 0,
            slot=meta.get("slot"),
        ))
    return infos
