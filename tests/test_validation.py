"""Test structural DAG validation."""

from meshdag.models import DAGSpec
from meshdag.validation import validate_dag


def dag(**overrides) -> DAGSpec:
    data = {
        "id": "wf",
        "name": "Workflow",
        "nodes": [
            {"id": "A", "name": "A"},
            {"id": "B", "name": "B", "dependencies": ["A"]},
        ],
        "edges": [{"id": "e1", "source": "A", "target": "B"}],
    }
    data.update(overrides)
    return DAGSpec.from_dict(data)


def test_valid_dag():
    result = validate_dag(dag())
    assert result.result
    assert result.reason == "DAG validation passed"


def test_missing_required_fields():
    result = validate_dag(dag(name=""))
    assert not result.result
    assert result.reason == "DAG missing required fields"
    assert result.details["type"] == "required_fields_validation"


def test_two_node_cycle():
    result = validate_dag(dag(nodes=[
        {"id": "A", "name": "A", "dependencies": ["B"]},
        {"id": "B", "name": "B", "dependencies": ["A"]},
    ]))
    assert not result.result
    assert "circular" in result.reason.lower()
    assert result.details["type"] == "circular_dependency_check"


def test_transitive_cycle():
    result = validate_dag(dag(nodes=[
        {"id": "A", "name": "A", "dependencies": ["C"]},
        {"id": "B", "name": "B", "dependencies": ["A"]},
        {"id": "C", "name": "C", "dependencies": ["B"]},
    ], edges=[]))
    assert not result.result
    assert "circular" in result.reason.lower()


def test_self_dependency():
    result = validate_dag(dag(nodes=[{"id": "A", "name": "A", "dependencies": ["A"]}], edges=[]))
    assert not result.result
    assert "depends on itself" in result.reason


def test_unknown_dependency():
    result = validate_dag(dag(nodes=[{"id": "A", "name": "A", "dependencies": ["ghost"]}], edges=[]))
    assert not result.result
    assert result.details["type"] == "dependency_validation"


def test_invalid_node_type():
    result = validate_dag(dag(nodes=[{"id": "A", "name": "A", "type": "lambda"}], edges=[]))
    assert not result.result
    assert result.details["type"] == "node_validation"


def test_duplicate_node_id():
    result = validate_dag(dag(nodes=[{"id": "A", "name": "A"}, {"id": "A", "name": "A2"}], edges=[]))
    assert not result.result
    assert "duplicate" in result.reason


def test_bad_backoff_strategy():
    result = validate_dag(dag(nodes=[
        {"id": "A", "name": "A", "retry_policy": {"backoff_strategy": "fibonacci"}},
    ], edges=[]))
    assert not result.result
    assert "backoff" in result.reason


def test_edge_to_unknown_node():
    result = validate_dag(dag(edges=[{"id": "e1", "source": "A", "target": "Z"}]))
    assert not result.result
    assert result.details["type"] == "edge_validation"


def test_invalid_edge_type():
    result = validate_dag(dag(edges=[{"id": "e1", "source": "A", "target": "B", "type": "maybe"}]))
    assert not result.result


def test_compensation_task_must_exist():
    result = validate_dag(dag(failure_handling={"strategy": "compensate", "compensation_tasks": ["undo"]}))
    assert not result.result
    assert result.details["type"] == "failure_handling_validation"


def test_max_concurrency_must_be_positive():
    result = validate_dag(dag(execution_policy={"max_concurrency": 0}))
    assert not result.result
    assert result.details["type"] == "execution_policy_validation"


def test_node_metadata_types():
    for metadata, key in [
        ({"priority": "high"}, "priority"),
        ({"priority": True}, "priority"),
        ({"resources": ["db", 3]}, "resources"),
        ({"resources": {"db": 1}}, "resources"),
        ({"slot": 7}, "slot"),
        ({"version": 2}, "version"),
    ]:
        result = validate_dag(dag(nodes=[{"id": "A", "name": "A", "metadata": metadata}], edges=[]))
        assert not result.result, metadata
        assert result.details == {"type": "node_validation", "node_id": "A", "key": key}


def test_node_metadata_accepts_scheduling_keys():
    metadata = {"priority": 5, "resources": "gpu", "slot": "nightly", "version": "lib@1.2.0", "owner": 3}
    assert validate_dag(dag(nodes=[{"id": "A", "name": "A", "metadata": metadata}], edges=[])).result
