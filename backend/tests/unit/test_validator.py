# backend/tests/unit/test_validator.py
from flowengine.engine.validator import reachable_node_ids, validate_flow


def codes(result):
    return {(issue["error_code"], issue["node_id"]) for issue in result["issues"]}


def test_well_formed_flow_is_valid(lead_flow):
    result = validate_flow(lead_flow)

    assert result["is_valid"] is True
    assert result["issues"] == []


def test_empty_flow(make_flow):
    result = validate_flow(make_flow(nodes=[], connections=[]))

    assert result["is_valid"] is False
    assert ("EMPTY_FLOW", None) in codes(result)


def test_structural_errors_are_reported(make_flow):
    flow = make_flow(
        nodes=[
            {"id": "t", "type": "trigger"},
            {"id": "c", "type": "condition", "conditions": [{"if": "x == 1", "goto": "nowhere"}]},
            {"id": "c", "type": "message", "content": "duplicate"},
        ],
        connections=[("t", "c"), ("c", "ghost")],
    )
    result = validate_flow(flow)

    assert result["is_valid"] is False
    assert {("DUPLICATE_NODE_ID", "c"), ("UNKNOWN_GOTO", "c"), ("DANGLING_CONNECTION", "ghost")} <= codes(result)


def test_warnings_do_not_invalidate(make_flow):
    flow = make_flow(
        nodes=[
            {"id": "q", "type": "question", "content": "Name?"},
            {"id": "island", "type": "message", "content": "unreachable"},
            {"id": "x", "type": "carousel"},
        ],
        connections=[("q", "x")],
    )
    result = validate_flow(flow)

    assert result["is_valid"] is True
    assert codes(result) == {
        ("NO_TRIGGER", "q"),
        ("QUESTION_WITHOUT_VARIABLE", "q"),
        ("UNKNOWN_NODE_TYPE", "x"),
        ("UNREACHABLE_NODE", "island"),
    }


def test_start_without_exit(make_flow):
    flow = make_flow(nodes=[{"id": "t", "type": "trigger"}], connections=[])
    assert ("START_HAS_NO_EXIT", "t") in codes(validate_flow(flow))


def test_reachability_follows_condition_gotos(make_flow):
    flow = make_flow(
        nodes=[
            {"id": "t", "type": "trigger"},
            {"id": "c", "type": "condition", "conditions": [{"else": True, "goto": "jump"}]},
            {"id": "jump", "type": "message", "content": "via goto"},
            {"id": "loop", "type": "message", "content": "back"},
        ],
        connections=[("t", "c"), ("jump", "loop"), ("loop", "c")],
    )
    assert reachable_node_ids(flow) == {"t", "c", "jump", "loop"}
