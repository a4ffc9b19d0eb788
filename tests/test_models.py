"""Test core data structures."""

from meshdag.models import (
    DAGInstance, DAGSpec, DependencyInfo, RetryPolicy, TaskExecutionResult, TraceEvent,
    WorkflowExecution, WorkflowTask, generate_id,
)


def test_generate_id():
    id1 = generate_id()
    id2 = generate_id()
    assert len(id1) == 12
    assert id1 != id2


def test_retry_policy_delays():
    exponential = RetryPolicy(backoff_strategy="exponential", initial_delay=0.5, max_delay=0)
    assert [exponential.delay_for(k) for k in range(4)] == [0.5, 1.0, 2.0, 4.0]

    linear = RetryPolicy(backoff_strategy="linear", initial_delay=0.5)
    assert [linear.delay_for(k) for k in range(3)] == [0.5, 1.0, 1.5]

    constant = RetryPolicy(backoff_strategy="constant", initial_delay=0.1)
    assert [constant.delay_for(k) for k in range(3)] == [0.1, 0.1, 0.1]


def test_retry_policy_max_delay_caps():
    policy = RetryPolicy(backoff_strategy="exponential", initial_delay=1.0, max_delay=3.0)
    assert policy.delay_for(5) == 3.0


def test_dag_spec_from_camel_case():
    spec = DAGSpec.from_dict({
        "id": "wf",
        "name": "Workflow",
        "nodes": [
            {"id": "A", "name": "A", "taskType": "api-call",
             "retryPolicy": {"maxAttempts": 2, "backoffStrategy": "constant", "initialDelay": 0.1}},
            {"id": "B", "name": "B", "dependencies": ["A"]},
        ],
        "executionPolicy": {"maxConcurrency": 2, "retryAttempts": 1},
        "failureHandlingPolicy": {"strategy": "continue", "notificationChannels": ["ops"]},
    })
    assert spec.node("A").task_type == "api-call"
    assert spec.node("A").retry_policy.max_attempts == 2
    assert spec.node("B").dependencies == ("A",)
    assert spec.execution_policy.max_concurrency == 2
    assert spec.failure_handling.strategy == "continue"
    assert spec.failure_handling.notification_channels == ("ops",)


def test_dag_spec_round_trip_keeps_nodes():
    spec = DAGSpec.from_dict({"id": "wf", "name": "W", "nodes": [{"id": "A", "name": "A"}]})
    again = DAGSpec.from_dict(spec.to_dict())
    assert again == spec


def test_task_nodes_skip_compensation_only_nodes():
    spec = DAGSpec.from_dict({
        "id": "wf",
        "name": "W",
        "nodes": [
            {"id": "A", "name": "A"},
            {"id": "gate", "name": "Gate", "type": "gateway"},
            {"id": "undo", "name": "Undo"},
        ],
        "failure_handling": {"strategy": "compensate", "compensation_tasks": ["undo"]},
    })
    assert [n.id for n in spec.task_nodes()] == ["A"]


def test_dag_instance_defaults():
    instance = DAGInstance(spec=DAGSpec(id="wf", name="W"))
    assert instance.id == "wf"
    assert instance.status == "created"
    assert instance.execution_id.startswith("exec-")
    assert not instance.is_terminal


def test_task_snapshot_is_independent():
    task = WorkflowTask(id="t", parameters={"k": 1}, dependencies=["a"])
    snap = task.snapshot()
    snap.parameters["k"] = 2
    snap.dependencies.append("b")
    assert task.parameters == {"k": 1}
    assert task.dependencies == ["a"]


def test_skipped_result_satisfies_dependents():
    skipped = TaskExecutionResult(task_id="t", success=False, status="cancelled", skipped=True)
    cancelled = TaskExecutionResult(task_id="t", success=False, status="cancelled")
    completed = TaskExecutionResult(task_id="t", success=True, status="completed")
    assert skipped.satisfies_dependents
    assert not cancelled.satisfies_dependents
    assert completed.satisfies_dependents


def test_result_to_dict_reports_error_text():
    result = TaskExecutionResult(task_id="t", success=False, error=ValueError("boom"), status="failed")
    data = result.to_dict()
    assert data["error"] == "boom"
    assert data["error_type"] == "ValueError"


def test_execution_latest_result():
    execution = WorkflowExecution(execution_id="e1")
    execution.add(TaskExecutionResult(task_id="t", success=False, status="failed"))
    execution.add(TaskExecutionResult(task_id="t", success=True, status="completed"))
    assert execution.latest("t").status == "completed"
    assert execution.latest("missing") is None


def test_dependency_info_versions():
    info = DependencyInfo(id="lib@2.1.0", version="1.0.0")
    assert info.base_name == "lib"
    assert info.resolved_version == "2.1.0"
    assert DependencyInfo(id="lib", version="1.0.0").resolved_version == "1.0.0"


def test_trace_event_shape():
    event = TraceEvent(event_type="workflow.started", source_agent="alex", timestamp=1.0, payload={"x": 1})
    assert event.to_dict() == {
        "timestamp": 1.0,
        "event_type": "workflow.started",
        "metadata": {"source_agent": "alex"},
        "payload": {"x": 1},
    }
