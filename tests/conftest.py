"""Shared fixtures: recording sleep, fake clock, supervisor builder."""

import pytest

from meshdag.breaker import CircuitBreaker
from meshdag.events import EventBus
from meshdag.executor import TaskExecutor
from meshdag.failures import FailureAnalyzer, RecoveryCoordinator
from meshdag.runners import TaskRunnerRegistry
from meshdag.supervisor import WorkflowSupervisor


class RecordingSleep:
    """Stands in for asyncio.sleep and records every requested delay."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def clock():
    return FakeClock()


def chain_dag(dag_id: str = "wf", ids=("A", "B", "C"), **extra) -> dict:
    """A linear chain where each node depends on the previous one."""
    nodes = []
    previous = None
    for node_id in ids:
        nodes.append({
            "id": node_id,
            "name": f"Task {node_id}",
            "type": "task",
            "dependencies": [previous] if previous else [],
        })
        previous = node_id
    return {"id": dag_id, "name": f"DAG {dag_id}", "nodes": nodes, **extra}


@pytest.fixture
def make_supervisor(sleep):
    """Build a supervisor wired with the given runners and instant backoff."""

    def build(runners: dict, threshold: int = 100, **kwargs) -> WorkflowSupervisor:
        registry = TaskRunnerRegistry()
        for task_type, runner in runners.items():
            registry.register(task_type, runner)
        bus = EventBus()
        breaker = CircuitBreaker(threshold=threshold, overrides={}, event_bus=bus)
        executor = TaskExecutor(registry, breaker, event_bus=bus, contracts={}, sleep=sleep)
        analyzer = FailureAnalyzer()
        recovery = RecoveryCoordinator(executor, analyzer, breaker, event_bus=bus, sleep=sleep)
        return WorkflowSupervisor(
            registry=registry,
            event_bus=bus,
            breaker=breaker,
            executor=executor,
            analyzer=analyzer,
            recovery=recovery,
            tick_interval=0.01,
            **kwargs,
        )

    return build


@pytest.fixture
def chain():
    return chain_dag
