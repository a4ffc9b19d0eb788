"""Workflow store: repository interface over instances, tasks and execution records."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod

from meshdag.models import DAGInstance, TaskExecutionResult, WorkflowExecution, WorkflowTask

logger = logging.getLogger(__name__)


class WorkflowStore(ABC):
    """Owns every DAG instance, materialized task and execution record."""

    @abstractmethod
    def save_instance(self, instance: DAGInstance):
        """Insert or replace a DAG instance."""

    @abstractmethod
    def get_instance(self, workflow_id: str) -> DAGInstance | None:
        """Look up a DAG instance by workflow id."""

    @abstractmethod
    def instances(self) -> list[DAGInstance]:
        """All known DAG instances."""

    @abstractmethod
    def save_task(self, task: WorkflowTask):
        """Insert or replace a materialized task."""

    @abstractmethod
    def get_task(self, task_id: str) -> WorkflowTask | None:
        """Look up a materialized task."""

    @abstractmethod
    def tasks_for(self, workflow_id: str) -> list[WorkflowTask]:
        """Tasks materialized for one workflow."""

    @abstractmethod
    def save_execution(self, execution: WorkflowExecution):
        """Insert or replace an execution record."""

    @abstractmethod
    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Look up an execution record."""

    @abstractmethod
    def executions(self) -> list[WorkflowExecution]:
        """All execution records."""

    @abstractmethod
    def append_result(self, execution_id: str, result: TaskExecutionResult):
        """Append a task result to an execution record, creating the record if needed."""

    def latest_result(self, task_id: str) -> TaskExecutionResult | None:
        """Most recent recorded result for a task across all executions."""
        latest: TaskExecutionResult | None = None
        for execution in self.executions():
            found = execution.latest(task_id)
            if found and (latest is None or found.end_time >= latest.end_time):
                latest = found
        return latest

    def all_results(self) -> list[TaskExecutionResult]:
        return [r for execution in self.executions() for r in execution.results]


class InMemoryStore(WorkflowStore):
    """Thread-safe dict-backed store. State lives for the process lifetime."""

    def __init__(self):
        self._instances: dict[str, DAGInstance] = {}
        self._tasks: dict[str, WorkflowTask] = {}
        self._executions: dict[str, WorkflowExecution] = {}
        self._lock = threading.Lock()

    def save_instance(self, instance: DAGInstance):
        with self._lock:
            self._instances[instance.id] = instance

    def get_instance(self, workflow_id: str) -> DAGInstance | None:
        with self._lock:
            return self._instances.get(workflow_id)

    def instances(self) -> list[DAGInstance]:
        with self._lock:
            return list(self._instances.values())

    def save_task(self, task: WorkflowTask):
        with self._lock:
            self._tasks[task.id] = task

    def get_task(self, task_id: str) -> WorkflowTask | None:
        with self._lock:
            return self._tasks.get(task_id)

    def tasks_for(self, workflow_id: str) -> list[WorkflowTask]:
        with self._lock:
            return [t for t in self._tasks.values() if t.workflow_id == workflow_id]

    def save_execution(self, execution: WorkflowExecution):
        with self._lock:
            self._executions[execution.execution_id] = execution

    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        with self._lock:
            return self._executions.get(execution_id)

    def executions(self) -> list[WorkflowExecution]:
        with self._lock:
            return list(self._executions.values())

    def append_result(self, execution_id: str, result: TaskExecutionResult):
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                execution = WorkflowExecution(execution_id=execution_id, workflow_id=result.workflow_id)
                self._executions[execution_id] = execution
            execution.add(result)
