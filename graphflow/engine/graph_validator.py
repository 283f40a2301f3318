"""Graph Validator for workflow definitions

Checks the structural invariants a workflow must satisfy before it can be
activated, and that every run snapshot must satisfy before launch:

- exactly one start node, with no incoming edges
- unique node and edge ids, every edge endpoint exists
- every node type is registered and its config matches its type
- condition nodes have exactly a ``true`` and a ``false`` outgoing edge
- parallel nodes fan out to at least two targets, joins have an incoming edge
- no cycles, every node reachable from start

Validation is pure: it reads the graph and returns a ValidationResult.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from typing import Any, Dict, List, Optional, Set

from ..nodes.registry import create_node, is_node_type_registered
from .context import RESERVED_KEYS
from .errors import ValidationError
from .models import GraphMixin, NodeType
from .safe_eval import validate_condition_expression

logger = logging.getLogger(__name__)

CONDITION_LABELS = frozenset({"true", "false"})


class ValidationIssue:
    """Workflow validation error or warning.

    Attributes:
        code: Error code
        message: Error message
        severity: Error severity (error or warning)
        node_ids: List of affected node IDs
        context: Additional error context
    """

    def __init__(
        self,
        code: str,
        message: str,
        severity: str = "error",
        node_ids: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.severity = severity
        self.node_ids = node_ids or []
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "nodeIds": self.node_ids,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"ValidationIssue({self.code!r}, {self.message!r})"


class ValidationResult:
    """Workflow validation result.

    Attributes:
        valid: Whether workflow is valid
        errors: List of validation errors
        warnings: List of validation warnings
    """

    def __init__(self, valid: bool, errors: List[ValidationIssue], warnings: List[ValidationIssue]):
        self.valid = valid
        self.errors = errors
        self.warnings = warnings

    @property
    def codes(self) -> Set[str]:
        return {e.code for e in self.errors}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def validate_workflow(graph: GraphMixin) -> ValidationResult:
    """Validate a workflow definition or run snapshot.

    Args:
        graph: Workflow or GraphSnapshot

    Returns:
        ValidationResult containing validation status and errors/warnings
    """
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    nodes = {}
    for node in graph.nodes:
        if node.id in nodes:
            errors.append(ValidationIssue(
                code="DUPLICATE_NODE_ID",
                message=f"Node id '{node.id}' is used more than once",
                node_ids=[node.id],
            ))
        nodes[node.id] = node

    # 1. Node ids may not shadow the render view's reserved keys
    for node_id in nodes:
        if node_id in RESERVED_KEYS:
            errors.append(ValidationIssue(
                code="RESERVED_NODE_ID",
                message=f"Node id '{node_id}' is reserved",
                node_ids=[node_id],
            ))

    # 2. Edge ids unique, endpoints exist
    edge_ids: Set[str] = set()
    edges = []
    for edge in graph.edges:
        if edge.id in edge_ids:
            errors.append(ValidationIssue(
                code="DUPLICATE_EDGE_ID",
                message=f"Edge id '{edge.id}' is used more than once",
                context={"edge_id": edge.id},
            ))
        edge_ids.add(edge.id)

        missing = [nid for nid in (edge.source_node_id, edge.target_node_id) if nid not in nodes]
        if missing:
            errors.append(ValidationIssue(
                code="UNKNOWN_EDGE_ENDPOINT",
                message=f"Edge '{edge.id}' references unknown node(s): {', '.join(missing)}",
                node_ids=missing,
                context={"edge_id": edge.id},
            ))
        else:
            edges.append(edge)

    outgoing = defaultdict(list)
    incoming = defaultdict(list)
    for edge in edges:
        outgoing[edge.source_node_id].append(edge)
        incoming[edge.target_node_id].append(edge)

    # 3. Exactly one start node, nothing flows into it
    starts = [n.id for n in nodes.values() if n.type == NodeType.START.value]
    if not starts:
        errors.append(ValidationIssue(
            code="MISSING_START",
            message="Workflow has no start node",
        ))
    elif len(starts) > 1:
        errors.append(ValidationIssue(
            code="MULTIPLE_START",
            message=f"Workflow has {len(starts)} start nodes; exactly one is allowed",
            node_ids=starts,
        ))
    for start_id in starts:
        if incoming[start_id]:
            errors.append(ValidationIssue(
                code="START_HAS_INCOMING",
                message=f"Start node '{start_id}' has incoming edges",
                node_ids=[start_id],
                context={"edge_ids": [e.id for e in incoming[start_id]]},
            ))

    # 4. Node types registered and configs match their type
    for node in nodes.values():
        if not is_node_type_registered(node.type):
            errors.append(ValidationIssue(
                code="INVALID_NODE_TYPE",
                message=f"Node '{node.id}' has unknown type '{node.type}'",
                node_ids=[node.id],
                context={"node_type": node.type},
            ))
            continue

        config_errors = create_node(node.id, node.type, node.config, node.label).validate_config()
        if config_errors:
            errors.append(ValidationIssue(
                code="INVALID_NODE_CONFIG",
                message=f"Node '{node.id}' has an invalid {node.type} config",
                node_ids=[node.id],
                context={"node_type": node.type, "validation_errors": config_errors},
            ))

    # 5. Branching rules per node type
    for node in nodes.values():
        out_edges = outgoing[node.id]

        if node.type == NodeType.CONDITION.value:
            labels = sorted(e.condition or "" for e in out_edges)
            if labels != ["false", "true"]:
                errors.append(ValidationIssue(
                    code="INVALID_CONDITION_EDGES",
                    message=(
                        f"Condition node '{node.id}' needs exactly one 'true' and one "
                        f"'false' outgoing edge, found {labels or 'none'}"
                    ),
                    node_ids=[node.id],
                    context={"edge_ids": [e.id for e in out_edges], "labels": labels},
                ))
            expression = node.config.get("expression")
            if isinstance(expression, str) and expression.strip():
                for err in validate_condition_expression(expression):
                    errors.append(ValidationIssue(
                        code="INVALID_CONDITION",
                        message=f"Condition node '{node.id}' expression is invalid: {err}",
                        node_ids=[node.id],
                        context={"expression": expression},
                    ))
        else:
            labelled = [e.id for e in out_edges if e.condition]
            if labelled:
                warnings.append(ValidationIssue(
                    code="LABEL_ON_UNCONDITIONAL",
                    message=f"Condition labels on edges from non-condition node '{node.id}' are ignored",
                    severity="warning",
                    node_ids=[node.id],
                    context={"edge_ids": labelled},
                ))

        if node.type == NodeType.PARALLEL.value:
            targets = {e.target_node_id for e in out_edges}
            branch_count = node.config.get("branchCount", node.config.get("branch_count"))
            if len(targets) < 2:
                errors.append(ValidationIssue(
                    code="PARALLEL_BRANCHES",
                    message=f"Parallel node '{node.id}' needs at least two outgoing targets",
                    node_ids=[node.id],
                    context={"target_count": len(targets)},
                ))
            elif isinstance(branch_count, int) and branch_count != len(out_edges):
                errors.append(ValidationIssue(
                    code="PARALLEL_BRANCHES",
                    message=(
                        f"Parallel node '{node.id}' declares branchCount={branch_count} "
                        f"but has {len(out_edges)} outgoing edges"
                    ),
                    node_ids=[node.id],
                    context={"branch_count": branch_count, "edge_count": len(out_edges)},
                ))

        if node.type == NodeType.JOIN.value and not incoming[node.id]:
            errors.append(ValidationIssue(
                code="JOIN_WITHOUT_INCOMING",
                message=f"Join node '{node.id}' has no incoming edges",
                node_ids=[node.id],
            ))

        if not out_edges and node.type != NodeType.END.value:
            warnings.append(ValidationIssue(
                code="NO_OUTGOING_EDGE",
                message=f"Node '{node.id}' has no outgoing edge and is not an end node",
                severity="warning",
                node_ids=[node.id],
            ))

    # 6. No cycles
    for cycle in detect_cycles(list(nodes), edges):
        errors.append(ValidationIssue(
            code="CIRCULAR_DEPENDENCY",
            message=f"Cycle detected: {' -> '.join(cycle)}",
            node_ids=cycle[:-1],
            context={"cycle_path": cycle},
        ))

    # 7. Every node reachable from start
    if len(starts) == 1:
        reachable = reachable_from(starts[0], edges)
        for node_id in nodes:
            if node_id not in reachable:
                errors.append(ValidationIssue(
                    code="UNREACHABLE_NODE",
                    message=f"Node '{node_id}' is not reachable from the start node",
                    node_ids=[node_id],
                ))

    # 8. Somewhere to finish
    if not any(n.type == NodeType.END.value for n in nodes.values()):
        warnings.append(ValidationIssue(
            code="NO_END_NODE",
            message="Workflow has no end node; runs will fail once they stop making progress",
            severity="warning",
        ))

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def ensure_valid(graph: GraphMixin) -> ValidationResult:
    """Validate and raise ValidationError listing every error found."""
    result = validate_workflow(graph)
    if not result.valid:
        summary = "; ".join(e.message for e in result.errors)
        raise ValidationError(f"Workflow validation failed: {summary}", issues=result.errors)
    return result


def reachable_from(start_id: str, edges) -> Set[str]:
    """Node ids reachable from ``start_id`` following edges forward."""
    adjacency = defaultdict(list)
    for edge in edges:
        adjacency[edge.source_node_id].append(edge.target_node_id)

    seen = {start_id}
    queue = deque([start_id])
    while queue:
        node_id = queue.popleft()
        for neighbor in adjacency[node_id]:
            if neighbor not in seen:
                seen.add(neighbor)
                queue.append(neighbor)
    return seen


def detect_cycles(node_ids: List[str], edges) -> List[List[str]]:
    """Detect cycles using DFS.

    Returns:
        One path per distinct cycle found (last element == first)
    """
    graph = defaultdict(list)
    for edge in edges:
        graph[edge.source_node_id].append(edge.target_node_id)

    cycles: List[List[str]] = []
    visited: Set[str] = set()
    path: List[str] = []
    path_set: Set[str] = set()
    found: Set[tuple] = set()

    def dfs(node: str):
        if node in path_set:
            cycle_path = path[path.index(node):] + [node]
            key = tuple(sorted(cycle_path[:-1]))
            if key not in found:
                found.add(key)
                cycles.append(cycle_path)
            return

        if node in visited:
            return

        visited.add(node)
        path.append(node)
        path_set.add(node)

        for neighbor in graph[node]:
            dfs(neighbor)

        path.pop()
        path_set.remove(node)

    for node_id in node_ids:
        if node_id not in visited:
            dfs(node_id)

    return cycles
