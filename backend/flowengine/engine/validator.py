# /flowengine/engine/validator.py

"""
Static checks for authored flows.

Validation is advisory: the Driver tolerates every problem reported here
(dangling edges end the run, missing goto targets fall through, cycles are
bounded by the step budget). The report exists so editors and the registry
can surface authoring mistakes before a conversation hits them.

All functions are pure and never raise.
"""

from typing import List, Optional, Set, TypedDict

from flowengine.models.flow import ConditionNode, FlowDefinition, QuestionNode, TriggerNode


class ValidationIssue(TypedDict):
    severity: str  # "error" | "warning"
    error_code: str
    node_id: Optional[str]
    message: str


class ValidationResult(TypedDict):
    is_valid: bool
    issues: List[ValidationIssue]


def _issue(severity: str, code: str, node_id: Optional[str], message: str) -> ValidationIssue:
    return {"severity": severity, "error_code": code, "node_id": node_id, "message": message}


def validate_start_node(flow: FlowDefinition) -> List[ValidationIssue]:
    if not flow.nodes:
        return [_issue("error", "EMPTY_FLOW", None, "Flow has no nodes")]
    start = flow.start_node()
    issues = []
    if not isinstance(start, TriggerNode):
        issues.append(_issue("warning", "NO_TRIGGER", start.id, f"No trigger node; '{start.id}' is used as the start"))
    if flow.first_connection_from(start.id) is None:
        issues.append(_issue("error", "START_HAS_NO_EXIT", start.id, "Start node has no outgoing connection"))
    return issues


def validate_connections(flow: FlowDefinition) -> List[ValidationIssue]:
    node_ids = {node.id for node in flow.nodes}
    issues = []
    for connection in flow.connections:
        for end, node_id in (("from", connection.from_node), ("to", connection.to_node)):
            if node_id not in node_ids:
                issues.append(_issue(
                    "error", "DANGLING_CONNECTION", node_id,
                    f"Connection {connection.from_node} -> {connection.to_node} references unknown '{end}' node '{node_id}'",
                ))
    return issues


def validate_nodes(flow: FlowDefinition) -> List[ValidationIssue]:
    node_ids = {node.id for node in flow.nodes}
    seen: Set[str] = set()
    issues = []
    for node in flow.nodes:
        if node.id in seen:
            issues.append(_issue("error", "DUPLICATE_NODE_ID", node.id, f"Node id '{node.id}' is used more than once"))
        seen.add(node.id)

        if isinstance(node, ConditionNode):
            for branch in node.conditions:
                if branch.goto and branch.goto not in node_ids:
                    issues.append(_issue(
                        "error", "UNKNOWN_GOTO", node.id, f"Condition branch jumps to unknown node '{branch.goto}'",
                    ))
        elif isinstance(node, QuestionNode):
            if flow.first_connection_from(node.id) is None:
                issues.append(_issue(
                    "warning", "QUESTION_HAS_NO_EXIT", node.id, "Answers to this question end the flow",
                ))
            if not node.variable:
                issues.append(_issue(
                    "warning", "QUESTION_WITHOUT_VARIABLE", node.id, "Answer is not stored in any variable",
                ))
        elif node.type == "unknown":
            issues.append(_issue(
                "warning", "UNKNOWN_NODE_TYPE", node.id, f"Node type '{node.declared_type}' is not supported",
            ))
    return issues


def reachable_node_ids(flow: FlowDefinition) -> Set[str]:
    start = flow.start_node()
    if start is None:
        return set()
    reached = {start.id}
    pending = [start.id]
    while pending:
        current = pending.pop()
        targets = [c.to_node for c in flow.connections if c.from_node == current]
        node = flow.get_node(current)
        if isinstance(node, ConditionNode):
            targets.extend(branch.goto for branch in node.conditions if branch.goto)
        for target in targets:
            if target not in reached and flow.get_node(target) is not None:
                reached.add(target)
                pending.append(target)
    return reached


def validate_reachability(flow: FlowDefinition) -> List[ValidationIssue]:
    reached = reachable_node_ids(flow)
    return [
        _issue("warning", "UNREACHABLE_NODE", node.id, f"Node '{node.id}' can never be reached")
        for node in flow.nodes
        if node.id not in reached
    ]


def validate_flow(flow: FlowDefinition) -> ValidationResult:
    issues = (
        validate_start_node(flow)
        + validate_connections(flow)
        + validate_nodes(flow)
        + validate_reachability(flow)
    )
    return {
        "is_valid": not any(issue["severity"] == "error" for issue in issues),
        "issues": issues,
    }
