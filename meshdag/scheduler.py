"""Scheduler: launches ready tasks of a workflow run, plus the scheduled-task poll loop."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from meshdag.config import POLL_INTERVAL
from meshdag.errors import TaskCancelledError
from meshdag.models import TaskExecutionResult, WorkflowTask

logger = logging.getLogger(__name__)


class Scheduler:
    """Runs the tasks of one workflow in dependency order, at most `max_concurrency` at a time.

    A task starts only after every dependency has a result that completed or
    was explicitly skipped. A task whose dependency ended any other way is
    recorded as cancelled without running. Pausing stops new launches;
    cancelling also lets in-flight tasks finish and cancels the rest.
    """

    def __init__(
        self,
        tasks: list[WorkflowTask],
        execute: Callable[[WorkflowTask], Awaitable[TaskExecutionResult]],
        status: Callable[[], str],
        max_concurrency: int = 4,
        tick_interval: float = 0.05,
        deadline: float | None = None,
        should_stop: Callable[[], bool] | None = None,
    ):
        self.tasks = {t.id: t for t in tasks}
        self.results: dict[str, TaskExecutionResult] = {}
        self.max_concurrency = max(1, max_concurrency)
        self.tick_interval = tick_interval
        self.deadline = deadline
        self._execute = execute
        self._status = status
        self._should_stop = should_stop
        self._running: dict[str, asyncio.Task] = {}
        self.peak_concurrency = 0

    def pending(self) -> list[WorkflowTask]:
        return [t for t in self.tasks.values() if t.id not in self.results and t.id not in self._running]

    def ready_tasks(self) -> list[WorkflowTask]:
        """Pending tasks whose dependencies all produced a usable result."""
        ready = []
        for task in self.pending():
            deps = [self.results.get(d) for d in task.dependencies]
            if all(r is not None and r.satisfies_dependents for r in deps):
                ready.append(task)
        return ready

    def blocked_tasks(self) -> list[tuple[WorkflowTask, str]]:
        """Pending tasks with a dependency that finished without a usable result."""
        blocked = []
        for task in self.pending():
            for dep in task.dependencies:
                result = self.results.get(dep)
                if result is not None and not result.satisfies_dependents:
                    blocked.append((task, f"dependency {dep} {result.status}"))
                    break
        return blocked

    def is_done(self) -> bool:
        return len(self.results) == len(self.tasks)

    def active_count(self) -> int:
        return len(self._running)

    def _halted(self) -> str | None:
        status = self._status()
        if status in ("cancelled", "failed", "completed"):
            return f"workflow {status}"
        if self.deadline is not None and time.time() >= self.deadline:
            return "workflow timeout"
        if self._should_stop and self._should_stop():
            return "workflow stopped after failure"
        return None

    async def tick(self):
        """Settle blocked tasks and launch ready ones."""
        # Cascade: cancelling one task can block its own dependents.
        blocked = self.blocked_tasks()
        while blocked:
            for task, reason in blocked:
                self._cancel(task, reason)
            blocked = self.blocked_tasks()

        if self._status() != "running" or self._halted():
            return

        for task in self.ready_tasks():
            if len(self._running) >= self.max_concurrency:
                break
            self._launch(task)

    def _launch(self, task: WorkflowTask):
        logger.info(f"Launching task {task.id} ({task.type})")
        self._running[task.id] = asyncio.create_task(self._execute_and_cleanup(task))
        self.peak_concurrency = max(self.peak_concurrency, len(self._running))

    async def _execute_and_cleanup(self, task: WorkflowTask):
        """Execute a task and record its result."""
        try:
            self.results[task.id] = await self._execute(task)
        except Exception as e:
            logger.error(f"Task {task.id} crashed outside the executor: {e}", exc_info=True)
            now = time.time()
            self.results[task.id] = TaskExecutionResult(
                task_id=task.id, success=False, error=e, start_time=now, end_time=now,
                status="failed", workflow_id=task.workflow_id,
            )
        finally:
            self._running.pop(task.id, None)

    def _cancel(self, task: WorkflowTask, reason: str):
        now = time.time()
        logger.info(f"Task {task.id} not started: {reason}")
        self.results[task.id] = TaskExecutionResult(
            task_id=task.id,
            success=False,
            error=TaskCancelledError(task.id, reason),
            start_time=now,
            end_time=now,
            status="cancelled",
            workflow_id=task.workflow_id,
        )

    async def run(self) -> dict[str, TaskExecutionResult]:
        """Drive the run until every task has a result."""
        while True:
            await self.tick()
            if self._running:
                await asyncio.wait(
                    list(self._running.values()),
                    timeout=self.tick_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                continue

            if self.is_done():
                break
            reason = self._halted()
            if reason:
                for task in self.pending():
                    self._cancel(task, reason)
                break
            if self._status() == "paused":
                await asyncio.sleep(self.tick_interval)
                continue
            if not self.ready_tasks():
                # Nothing running and nothing can start: dependencies outside this run.
                for task in self.pending():
                    self._cancel(task, "dependencies cannot be satisfied")
                break
        return self.results


class PollLoop:
    """Cancellable ticker that drains a queue every `interval` seconds."""

    def __init__(self, drain: Callable[[], Awaitable[Any]], interval: float = POLL_INTERVAL):
        self.interval = interval
        self._drain = drain
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Poll loop started (every {self.interval:g}s)")

    async def stop(self):
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Poll loop stopped")

    async def _loop(self):
        while True:
            try:
                await self._drain()
            except Exception as e:
                logger.error(f"Scheduled task drain failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)
