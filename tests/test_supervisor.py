"""Test the workflow supervisor: lifecycle, scheduling, recovery, status and events."""

import asyncio

import pytest

from meshdag.errors import CycleError, DAGValidationError, InvalidTransitionError, NotFoundError
from meshdag.models import EventKind, WorkflowTask


async def ok(task):
    return {"task": task.id}


class Scripted:
    """Per-task outcomes: an exception is raised, a list is consumed call by call."""

    def __init__(self, outcomes=None, delay=0.0):
        self.outcomes = outcomes or {}
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.calls: list[str] = []

    async def __call__(self, task):
        self.calls.append(task.id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes.get(task.id, {"task": task.id})
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if outcome else {"task": task.id}
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.active -= 1


# ---------------------------------------------------------------------------
# DAG management
# ---------------------------------------------------------------------------


def test_create_dag(make_supervisor, chain):
    sup = make_supervisor({"default": ok})
    instance = sup.create_dag(chain())
    assert instance.status == "created"
    assert instance.spec.id == "wf"
    assert sup.event_bus.of_type("dag.created")[0].payload["workflow_id"] == "wf"


def test_create_dag_rejects_cycles(make_supervisor):
    sup = make_supervisor({"default": ok})
    with pytest.raises(DAGValidationError) as exc:
        sup.create_dag({
            "id": "wf",
            "name": "Cycle",
            "nodes": [
                {"id": "A", "name": "A", "dependencies": ["B"]},
                {"id": "B", "name": "B", "dependencies": ["A"]},
            ],
        })
    assert "circular" in str(exc.value).lower()
    assert sup.store.get_instance("wf") is None


def test_create_dag_rejects_duplicates(make_supervisor, chain):
    sup = make_supervisor({"default": ok})
    sup.create_dag(chain())
    with pytest.raises(DAGValidationError):
        sup.create_dag(chain())


def test_create_dag_rejects_bad_metadata_without_saving(make_supervisor):
    sup = make_supervisor({"default": ok})
    spec = {"id": "wf", "name": "W", "nodes": [{"id": "A", "name": "A", "metadata": {"priority": "high"}}]}
    with pytest.raises(DAGValidationError) as exc:
        sup.create_dag(spec)
    assert exc.value.validation.details["type"] == "node_validation"
    assert sup.store.get_instance("wf") is None

    spec["nodes"][0]["metadata"]["priority"] = 3
    assert sup.create_dag(spec).status == "created"


def test_validate_dag_has_no_side_effects(make_supervisor, chain):
    sup = make_supervisor({"default": ok})
    assert sup.validate_dag(chain()).result
    assert sup.store.instances() == []


def test_update_dag(make_supervisor, chain):
    sup = make_supervisor({"default": ok})
    sup.create_dag(chain())
    instance = sup.update_dag("wf", {"version": "2.0.0"})
    assert instance.spec.version == "2.0.0"
    assert len(instance.spec.nodes) == 3


def test_update_dag_revalidates(make_supervisor, chain):
    sup = make_supervisor({"default": ok})
    sup.create_dag(chain())
    with pytest.raises(DAGValidationError):
        sup.update_dag("wf", {"nodes": [{"id": "A", "name": "A", "dependencies": ["A"]}]})
    with pytest.raises(DAGValidationError):
        sup.update_dag("wf", {"id": "other"})
    with pytest.raises(NotFoundError):
        sup.update_dag("missing", {})


async def test_update_dag_only_before_start(make_supervisor, chain):
    sup = make_supervisor({"default": ok})
    sup.create_dag(chain())
    await sup.start_workflow("wf")
    with pytest.raises(InvalidTransitionError):
        sup.update_dag("wf", {"version": "2.0.0"})


def test_resolve_dependencies_for_workflow(make_supervisor, chain):
    sup = make_supervisor({"default": ok})
    sup.create_dag(chain())
    result = sup.resolve_dependencies(["A", "B", "C"], workflow_id="wf")
    assert result.execution_order == ["A", "B", "C"]
    assert sup.resolve_dependencies(["A", "B", "C"]).execution_order == ["A", "B", "C"]


# ---------------------------------------------------------------------------
# Running workflows
# ---------------------------------------------------------------------------


async def test_orchestrate_linear_chain(make_supervisor, chain):
    sup = make_supervisor({"default": ok})
    result = await sup.orchestrate_workflow(chain())

    assert result.success
    assert result.status == "completed"
    assert [t.task_id for t in result.tasks] == ["A", "B", "C"]
    by_id = {t.task_id: t for t in result.tasks}
    assert by_id["A"].end_time <= by_id["B"].start_time
    assert by_id["B"].end_time <= by_id["C"].start_time
    assert result.metrics.completed_workflows == 1

    types = [e.event_type for e in sup.event_bus.recent(limit=100)]
    assert types.index("workflow.started") < types.index("workflow.completed")
    assert types.count("task.completed") == 3


async def test_deep_chain_listed_leaf_first(make_supervisor, chain):
    ids = [f"n{i}" for i in range(1100)]
    spec = chain(ids=ids)
    spec["nodes"].reverse()
    sup = make_supervisor({"default": ok})
    sup.create_dag(spec)

    result = await sup.start_workflow("wf")
    assert result.status == "completed"
    assert [t.task_id for t in result.tasks] == ids


async def test_resolver_error_leaves_workflow_created(make_supervisor, chain, monkeypatch):
    sup = make_supervisor({"default": ok})
    sup.create_dag(chain())

    def broken(*args, **kwargs):
        raise CycleError("A")

    monkeypatch.setattr(sup.resolver, "resolve", broken)
    with pytest.raises(CycleError):
        await sup.start_workflow("wf")
    assert sup.store.get_instance("wf").status == "created"

    monkeypatch.undo()
    assert (await sup.start_workflow("wf")).status == "completed"


async def test_orchestrate_invalid_dag(make_supervisor):
    sup = make_supervisor({"default": ok})
    result = await sup.orchestrate_workflow({"id": "wf", "name": ""})
    assert not result.success
    assert result.status == "failed"
    assert "missing required fields" in result.errors[0]


async def test_concurrency_bound(make_supervisor):
    runner = Scripted(delay=0.02)
    sup = make_supervisor({"default": runner})
    result = await sup.orchestrate_workflow({
        "id": "wide",
        "name": "Wide",
        "nodes": [{"id": f"t{i}", "name": f"t{i}"} for i in range(6)],
        "execution_policy": {"max_concurrency": 2},
    })
    assert result.status == "completed"
    assert runner.peak == 2
    assert len(runner.calls) == 6


async def test_dependencies_through_gateway_nodes(make_supervisor):
    sup = make_supervisor({"default": ok})
    result = await sup.orchestrate_workflow({
        "id": "wf",
        "name": "Gateway",
        "nodes": [
            {"id": "A", "name": "A"},
            {"id": "gate", "name": "Gate", "type": "gateway", "dependencies": ["A"]},
            {"id": "B", "name": "B", "dependencies": ["gate"]},
        ],
    })
    assert result.status == "completed"
    by_id = {t.task_id: t for t in result.tasks}
    assert set(by_id) == {"A", "B"}
    assert by_id["A"].end_time <= by_id["B"].start_time


async def test_every_task_failing_fails_workflow(make_supervisor, chain):
    runner = Scripted({"A": RuntimeError("record not found"), "B": RuntimeError("record not found")})
    sup = make_supervisor({"default": runner})
    result = await sup.orchestrate_workflow({
        "id": "wf", "name": "W", "nodes": [{"id": "A", "name": "A"}, {"id": "B", "name": "B"}],
    })
    assert result.status == "failed"
    assert not result.success
    assert sup.get_workflow_status("wf").failed_tasks == 2
    assert sup.event_bus.of_type("workflow.failed")


async def test_partial_failure_stays_running(make_supervisor):
    runner = Scripted({"B": RuntimeError("record not found")})
    sup = make_supervisor({"default": runner})
    result = await sup.orchestrate_workflow({
        "id": "wf",
        "name": "W",
        "nodes": [
            {"id": "A", "name": "A"},
            {"id": "B", "name": "B"},
            {"id": "C", "name": "C", "dependencies": ["B"]},
        ],
        "failure_handling": {"notification_channels": ["ops"]},
    })
    assert result.status == "running"
    assert not result.success
    statuses = {t.task_id: t.status for t in result.tasks}
    assert statuses == {"A": "completed", "B": "failed", "C": "cancelled"}
    assert "C" not in runner.calls

    notices = sup.event_bus.of_type("workflow.notification")
    assert notices[0].payload["channels"] == ["ops"]
    assert notices[0].payload["task_id"] == "B"


async def test_continue_strategy_skips_failed_task(make_supervisor):
    runner = Scripted({"A": RuntimeError("record not found")})
    sup = make_supervisor({"default": runner})
    result = await sup.orchestrate_workflow({
        "id": "wf",
        "name": "W",
        "nodes": [{"id": "A", "name": "A"}, {"id": "B", "name": "B", "dependencies": ["A"]}],
        "failure_handling": {"strategy": "continue"},
    })
    by_id = {t.task_id: t for t in result.tasks}
    assert by_id["A"].skipped
    assert by_id["B"].status == "completed"
    assert result.status == "completed"
    assert "A skipped" in result.warnings


async def test_stop_strategy_halts_scheduling(make_supervisor):
    runner = Scripted({"A": RuntimeError("record not found")})
    sup = make_supervisor({"default": runner})
    result = await sup.orchestrate_workflow({
        "id": "wf",
        "name": "W",
        "nodes": [{"id": "A", "name": "A"}, {"id": "B", "name": "B"}],
        "execution_policy": {"max_concurrency": 1},
        "failure_handling": {"strategy": "stop"},
    })
    assert result.status == "failed"
    assert "B" not in runner.calls
    assert {t.task_id: t.status for t in result.tasks}["B"] == "cancelled"


async def test_compensate_strategy_runs_compensations_in_reverse(make_supervisor):
    runner = Scripted({"A": RuntimeError("record not found")})
    sup = make_supervisor({"default": runner})
    await sup.orchestrate_workflow({
        "id": "wf",
        "name": "W",
        "nodes": [
            {"id": "A", "name": "A"},
            {"id": "undo1", "name": "Undo 1"},
            {"id": "undo2", "name": "Undo 2"},
        ],
        "failure_handling": {"strategy": "compensate", "compensation_tasks": ["undo1", "undo2"]},
    })
    assert runner.calls[-2:] == ["undo2", "undo1"]
    assert runner.calls.count("A") == 4
    event = sup.event_bus.of_type("workflow.compensated")[0]
    assert event.payload["completed"] == ["undo2", "undo1"]


async def test_transient_failure_is_retried(make_supervisor):
    runner = Scripted({"A": [RuntimeError("connection reset"), {"ok": True}]})
    sup = make_supervisor({"default": runner})
    result = await sup.orchestrate_workflow({"id": "wf", "name": "W", "nodes": [{"id": "A", "name": "A"}]})
    assert result.status == "completed"
    assert result.tasks[0].retry_count == 1


async def test_node_retry_policy_is_used(make_supervisor, sleep):
    runner = Scripted({"A": RuntimeError("record not found")})
    sup = make_supervisor({"default": runner})
    await sup.orchestrate_workflow({
        "id": "wf",
        "name": "W",
        "nodes": [{
            "id": "A", "name": "A",
            "retry_policy": {"max_attempts": 2, "backoff_strategy": "constant", "initial_delay": 0.25},
        }],
    })
    assert runner.calls == ["A", "A", "A"]
    assert sleep.delays == [0.25, 0.25]
    assert sup.get_task_status("A").retry_count == 2


async def test_workflow_timeout_fails_run(make_supervisor):
    runner = Scripted(delay=0.05)
    sup = make_supervisor({"default": runner})
    result = await sup.orchestrate_workflow({
        "id": "wf", "name": "W",
        "nodes": [{"id": "A", "name": "A"}, {"id": "B", "name": "B", "dependencies": ["A"]}],
        "execution_policy": {"timeout": 0.02},
    })
    assert result.status == "failed"
    assert runner.calls == ["A"]


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------


def test_guarded_transitions(make_supervisor, chain):
    sup = make_supervisor({"default": ok})
    sup.create_dag(chain())
    assert not sup.pause_workflow("wf")
    assert not sup.resume_workflow("wf")
    assert sup.cancel_workflow("wf")
    assert not sup.cancel_workflow("wf")
    assert not sup.pause_workflow("missing")
    assert sup.get_workflow_status("wf").status == "cancelled"


async def test_cancelled_workflow_cannot_start(make_supervisor, chain):
    sup = make_supervisor({"default": ok})
    sup.create_dag(chain())
    sup.cancel_workflow("wf")
    with pytest.raises(InvalidTransitionError):
        await sup.start_workflow("wf")


async def test_start_unknown_workflow(make_supervisor):
    sup = make_supervisor({"default": ok})
    with pytest.raises(NotFoundError):
        await sup.start_workflow("missing")


async def _wait_for_status(sup, task_id, status):
    for _ in range(200):
        if sup.get_task_status(task_id).status == status:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"{task_id} never reached {status}")


async def test_cancel_lets_inflight_task_finish(make_supervisor, chain):
    gate = asyncio.Event()

    async def blocking(task):
        if task.id == "A":
            await gate.wait()
        return {}

    sup = make_supervisor({"default": blocking})
    sup.create_dag(chain())
    run = asyncio.create_task(sup.start_workflow("wf"))
    await _wait_for_status(sup, "A", "running")

    assert sup.cancel_workflow("wf")
    gate.set()
    result = await run

    assert result.status == "cancelled"
    assert sup.get_task_status("A").status == "completed"
    assert sup.get_task_status("B").status == "cancelled"
    assert sup.get_task_status("C").status == "cancelled"


async def test_pause_and_resume(make_supervisor, chain):
    gate = asyncio.Event()

    async def blocking(task):
        if task.id == "A":
            await gate.wait()
        return {}

    sup = make_supervisor({"default": blocking})
    sup.create_dag(chain())
    run = asyncio.create_task(sup.start_workflow("wf"))
    await _wait_for_status(sup, "A", "running")

    assert sup.pause_workflow("wf")
    gate.set()
    await _wait_for_status(sup, "A", "completed")
    await asyncio.sleep(0.03)
    assert sup.get_task_status("B").status == "pending"
    assert sup.get_workflow_status("wf").status == "paused"

    assert sup.resume_workflow("wf")
    result = await run
    assert result.status == "completed"
    assert [e.event_type for e in sup.event_bus.of_type("workflow.resumed")] == ["workflow.resumed"]


# ---------------------------------------------------------------------------
# Status and metrics
# ---------------------------------------------------------------------------


def test_not_found_statuses(make_supervisor):
    sup = make_supervisor({"default": ok})
    assert sup.get_workflow_status("nope").status == "not_found"
    assert sup.get_task_status("nope").status == "not_found"


async def test_workflow_status_progress(make_supervisor):
    runner = Scripted({"B": RuntimeError("record not found")})
    sup = make_supervisor({"default": runner})
    await sup.orchestrate_workflow({
        "id": "wf", "name": "W",
        "nodes": [{"id": "A", "name": "A"}, {"id": "B", "name": "B"}],
    })
    status = sup.get_workflow_status("wf")
    assert status.total_tasks == 2
    assert status.completed_tasks == 1
    assert status.failed_tasks == 1
    assert status.progress == 50.0
    assert status.estimated_completion is not None


async def test_task_status_after_run(make_supervisor, chain):
    sup = make_supervisor({"default": ok})
    await sup.orchestrate_workflow(chain())
    status = sup.get_task_status("A")
    assert status.status == "completed"
    assert status.progress == 100
    assert status.end_time >= status.start_time


async def test_system_metrics(make_supervisor, chain):
    runner = Scripted({"X": RuntimeError("record not found")})
    sup = make_supervisor({"default": runner})
    await sup.orchestrate_workflow(chain())
    await sup.orchestrate_workflow({"id": "bad", "name": "Bad", "nodes": [{"id": "X", "name": "X"}]})
    sup.create_dag(chain("idle"))

    metrics = sup.get_system_metrics()
    assert metrics.active_workflows == 0
    assert metrics.completed_workflows == 1
    assert metrics.failed_workflows == 1
    assert metrics.total_tasks_executed == 4
    assert metrics.success_rate == pytest.approx(0.75)
    assert metrics.throughput == 4
    assert metrics.average_execution_time >= 0


# ---------------------------------------------------------------------------
# Scheduled tasks and background recovery
# ---------------------------------------------------------------------------


async def test_scheduled_tasks_run_in_dependency_waves(make_supervisor):
    runner = Scripted()
    sup = make_supervisor({"default": runner})
    second = sup.schedule_task({"id": "second", "dependencies": ["first"]})
    first = sup.schedule_task(WorkflowTask(id="first"))
    assert (first, second) == ("first", "second")

    results = await sup.execute_scheduled_tasks()

    assert [r.task_id for r in results] == ["first", "second"]
    assert all(r.status == "completed" for r in results)
    assert runner.calls == ["first", "second"]


async def test_scheduled_task_gets_an_id(make_supervisor):
    sup = make_supervisor({"default": ok})
    task_id = sup.schedule_task({"type": "default"})
    assert task_id.startswith("task-")
    assert sup.get_task_status(task_id).status == "pending"
    assert sup.event_bus.of_type("task.scheduled")[0].payload["task_id"] == task_id


async def test_poll_loop_drains_queue(make_supervisor):
    sup = make_supervisor({"default": ok}, poll_interval=0.01)
    await sup.initialize()
    try:
        sup.schedule_task({"id": "t1"})
        await _wait_for_status(sup, "t1", "completed")
    finally:
        await sup.shutdown()
    assert sup.event_bus.of_type("agent.initialized")
    assert sup.event_bus.of_type("agent.shutdown")


async def test_execute_unknown_task(make_supervisor):
    sup = make_supervisor({"default": ok})
    with pytest.raises(NotFoundError):
        await sup.execute_task("ghost")


async def test_handle_task_failure_retries_in_background(make_supervisor):
    runner = Scripted()
    sup = make_supervisor({"default": runner})
    sup.schedule_task({"id": "t1"})

    plan = await sup.handle_task_failure("t1", TimeoutError("upstream timeout"))
    assert plan.action == "retry"
    await sup.drain_recoveries()

    assert runner.calls == ["t1"]
    assert sup.get_task_status("t1").status == "completed"


async def test_handle_task_failure_fail_is_immediate(make_supervisor):
    sup = make_supervisor({"default": ok})
    sup.schedule_task({"id": "t1"})
    plan = await sup.handle_task_failure("t1", RuntimeError("record not found"))
    assert plan.action == "fail"
    assert sup.event_bus.of_type("workflow.notification")


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------


async def test_event_dispatch(make_supervisor, chain):
    sup = make_supervisor({"default": ok})
    sup.create_dag(chain())
    result = await sup.handle_event("workflow.start", {"workflowId": "wf"})
    assert result.status == "completed"

    sup.create_dag(chain("wf2"))
    assert await sup.handle_event(EventKind.WORKFLOW_CANCEL, {"workflow_id": "wf2"}) is True
    assert await sup.handle_event(EventKind.WORKFLOW_PAUSE, {"workflow_id": "wf2"}) is False


async def test_task_events_are_trace_only(make_supervisor):
    sup = make_supervisor({"default": ok})
    assert await sup.handle_event("task.complete", {"task_id": "t1"}) is None
    assert await sup.handle_event("task.fail", {"task_id": "t1", "error": "x"}) is None
    assert sup.event_bus.of_type("task.complete.received")[0].payload["task_id"] == "t1"
    assert sup.event_bus.of_type("task.fail.received")


async def test_task_execute_event(make_supervisor):
    sup = make_supervisor({"default": ok})
    sup.schedule_task({"id": "t1"})
    result = await sup.handle_event("task.execute", {"taskId": "t1"})
    assert result.status == "completed"


async def test_unknown_event(make_supervisor):
    sup = make_supervisor({"default": ok})
    with pytest.raises(ValueError):
        await sup.handle_event("workflow.explode", {"workflow_id": "wf"})
    event = sup.event_bus.of_type("unknown.event.received")[0]
    assert event.payload["event_type"] == "workflow.explode"


async def test_event_missing_payload_key(make_supervisor):
    sup = make_supervisor({"default": ok})
    with pytest.raises(ValueError):
        await sup.handle_event("workflow.start", {})
