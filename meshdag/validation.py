"""Structural validation of DAG specifications.

Checks run in order and the first failure is reported:
required fields, execution policy, nodes, dependencies, edges, failure
handling, then cycle detection over node dependencies.
"""

from __future__ import annotations

from meshdag.models import (
    BACKOFF_STRATEGIES, EDGE_TYPES, FAILURE_STRATEGIES, NODE_TYPES,
    DAGSpec, RetryPolicy, ValidationResult,
)
from meshdag.resolver import find_cycles


def _fail(reason: str, check: str, **details) -> ValidationResult:
    return ValidationResult(result=False, reason=reason, details={"type": check, **details})


def _check_retry_policy(node_id: str, policy: RetryPolicy) -> ValidationResult | None:
    if policy.backoff_strategy not in BACKOFF_STRATEGIES:
        return _fail(
            f"Node validation failed: {node_id} has unknown backoff strategy '{policy.backoff_strategy}'",
            "node_validation", node_id=node_id,
        )
    if policy.max_attempts < 0 or policy.initial_delay < 0 or policy.max_delay < 0:
        return _fail(
            f"Node validation failed: {node_id} has a negative retry setting",
            "node_validation", node_id=node_id,
        )
    return None


def _check_metadata(node_id: str, metadata: dict) -> ValidationResult | None:
    """Scheduling keys in node metadata must have the types the resolver reads."""
    priority = metadata.get("priority")
    resources = metadata.get("resources")
    if priority is not None and (isinstance(priority, bool) or not isinstance(priority, int)):
        bad = "priority"
    elif isinstance(resources, list) and not all(isinstance(r, str) for r in resources):
        bad = "resources"
    elif resources is not None and not isinstance(resources, (str, list)):
        bad = "resources"
    else:
        bad = next(
            (key for key in ("slot", "version") if not isinstance(metadata.get(key, ""), (str, type(None)))),
            None,
        )
    if bad:
        return _fail(
            f"Node validation failed: {node_id} has invalid metadata '{bad}'",
            "node_validation", node_id=node_id, key=bad,
        )
    return None


def validate_dag(dag: DAGSpec) -> ValidationResult:
    """Validate a DAG specification without side effects."""
    if not dag.id or not dag.name:
        return _fail("DAG missing required fields", "required_fields_validation")

    policy = dag.execution_policy
    if policy.max_concurrency < 1:
        return _fail("Execution policy maxConcurrency must be at least 1", "execution_policy_validation")
    if policy.retry_attempts < 0 or policy.timeout < 0 or policy.failure_threshold < 0:
        return _fail("Execution policy values must not be negative", "execution_policy_validation")

    # Nodes
    node_ids: set[str] = set()
    for node in dag.nodes:
        if not node.id or not node.name or node.type not in NODE_TYPES:
            return _fail(f"Node validation failed: {node.id}", "node_validation", node_id=node.id)
        if node.id in node_ids:
            return _fail(f"Node validation failed: duplicate node id {node.id}", "node_validation", node_id=node.id)
        if node.timeout is not None and node.timeout <= 0:
            return _fail(f"Node validation failed: {node.id} has a non-positive timeout", "node_validation", node_id=node.id)
        if node.retry_policy:
            failure = _check_retry_policy(node.id, node.retry_policy)
            if failure:
                return failure
        failure = _check_metadata(node.id, node.metadata or {})
        if failure:
            return failure
        node_ids.add(node.id)

    # Dependencies must stay inside the DAG
    for node in dag.nodes:
        for dep in node.dependencies:
            if dep == node.id:
                return _fail(
                    f"Circular dependencies detected in DAG: {node.id} depends on itself",
                    "circular_dependency_check", cycle=[node.id, node.id],
                )
            if dep not in node_ids:
                return _fail(
                    f"Node {node.id} depends on unknown node {dep}",
                    "dependency_validation", node_id=node.id, dependency=dep,
                )

    # Edges
    edge_ids: set[str] = set()
    for edge in dag.edges:
        if not edge.id or not edge.source or not edge.target or edge.type not in EDGE_TYPES:
            return _fail(f"Edge validation failed: {edge.id}", "edge_validation", edge_id=edge.id)
        if edge.id in edge_ids:
            return _fail(f"Edge validation failed: duplicate edge id {edge.id}", "edge_validation", edge_id=edge.id)
        if edge.source not in node_ids or edge.target not in node_ids:
            return _fail(
                f"Edge validation failed: {edge.id} references an unknown node",
                "edge_validation", edge_id=edge.id,
            )
        edge_ids.add(edge.id)

    # Failure handling
    handling = dag.failure_handling
    if handling.strategy not in FAILURE_STRATEGIES:
        return _fail(f"Unknown failure handling strategy '{handling.strategy}'", "failure_handling_validation")
    for task_id in handling.compensation_tasks:
        if task_id not in node_ids:
            return _fail(
                f"Compensation task {task_id} is not a node of the DAG",
                "failure_handling_validation", task_id=task_id,
            )

    cycles = find_cycles({n.id: list(n.dependencies) for n in dag.nodes})
    if cycles:
        path = " -> ".join(cycles[0])
        return _fail(
            f"Circular dependencies detected in DAG: {path}",
            "circular_dependency_check", cycles=cycles,
        )

    return ValidationResult(result=True, reason="DAG validation passed", details={"type": "dag_validation"})
