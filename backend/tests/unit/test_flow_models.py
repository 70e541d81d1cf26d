# backend/tests/unit/test_flow_models.py
import json

from flowengine.models.flow import (
    AIResponseNode,
    ConditionNode,
    FlowDefinition,
    QuestionNode,
    UnknownNode,
    WebhookNode,
)
from flowengine.models.session import ExecutionSession
from flowengine.services.flow_registry import FlowRegistry


def test_flow_document_with_json_string_fields():
    document = {
        "id": 4,
        "name": "Lead capture",
        "isDefault": True,
        "triggerConfig": json.dumps({"type": "keyword", "keywords": ["hola"]}),
        "nodes": json.dumps([
            {"id": 1, "type": "trigger"},
            {"id": 2, "type": "question", "content": "Size?", "variable": "size", "options": ["S", "M"]},
        ]),
        "connections": json.dumps([{"from": 1, "to": 2}]),
        "variables": None,
    }
    flow = FlowDefinition.model_validate(document)

    assert flow.is_default is True
    assert flow.trigger_config.keywords == ["hola"]
    assert flow.label == "Lead capture"
    assert flow.variables == {}
    question = flow.get_node("2")
    assert isinstance(question, QuestionNode)
    assert [(o.label, o.value) for o in question.options] == [("S", "S"), ("M", "M")]
    assert flow.first_connection_from("1").to_node == "2"


def test_unknown_node_type_is_kept_as_placeholder():
    flow = FlowDefinition.model_validate({
        "nodes": [{"id": "x", "type": "carousel", "cards": [1, 2]}, {"id": "y"}],
    })

    assert all(isinstance(node, UnknownNode) for node in flow.nodes)
    assert flow.nodes[0].declared_type == "carousel"
    assert flow.nodes[1].declared_type is None


def test_condition_branch_aliases():
    node = ConditionNode.model_validate({
        "id": "c",
        "conditions": [{"if": "a == 1", "goto": "one"}, {"else": True, "goto": "other"}],
    })

    assert node.conditions[0].expression == "a == 1"
    assert node.conditions[0].is_else is False
    assert node.conditions[1].is_else is True


def test_camel_case_node_fields():
    ai = AIResponseNode.model_validate({"id": "a", "type": "ai_response", "userPrompt": "hi", "maxTokens": 9})
    hook = WebhookNode.model_validate({"id": "w", "type": "webhook", "timeoutMs": 100})

    assert (ai.user_prompt, ai.max_tokens) == ("hi", 9)
    assert hook.timeout_ms == 100


def test_start_node_prefers_first_trigger():
    flow = FlowDefinition.model_validate({
        "nodes": [
            {"id": "m", "type": "message"},
            {"id": "t1", "type": "trigger"},
            {"id": "t2", "type": "trigger"},
        ],
    })
    assert flow.start_node().id == "t1"
    assert FlowDefinition().start_node() is None


def test_duplicate_ids_resolve_to_first_listed():
    flow = FlowDefinition.model_validate({
        "nodes": [{"id": "a", "type": "message", "content": "first"}, {"id": "a", "type": "message", "content": "second"}],
    })
    assert flow.get_node("a").content == "first"


def test_session_document_shape():
    session = ExecutionSession.model_validate({"currentNodeId": "q", "variables": {"n": 1}, "waitingForInput": True})

    assert session.current_node_id == "q"
    assert session.to_document() == {"currentNodeId": "q", "variables": {"n": 1}, "waitingForInput": True}


def test_null_fields_fall_back_to_defaults():
    flow = FlowDefinition.model_validate({
        "nodes": [
            {"id": "t", "type": "trigger"},
            {"id": "m", "type": "message", "content": None},
            {"id": "q", "type": "question", "content": None, "variable": None, "options": None},
            {"id": "a", "type": "action", "action": None, "payload": None},
            {"id": "w", "type": "webhook", "url": None, "method": None, "timeoutMs": None},
            {"id": "d", "type": "delay", "seconds": None, "typingIndicator": None},
        ],
    })

    assert flow.get_node("m").content == ""
    assert flow.get_node("q").options == []
    assert flow.get_node("a").action == ""
    assert flow.get_node("a").payload == {}
    webhook = flow.get_node("w")
    assert (webhook.url, webhook.method, webhook.timeout_ms) == ("", "POST", None)
    assert flow.get_node("d").typing_indicator is True


def test_registry_keeps_flow_with_null_fields():
    registry = FlowRegistry()
    registry.load([{
        "id": 1,
        "slug": "nulls",
        "nodes": [{"id": "t", "type": "trigger"}, {"id": "m", "type": "message", "content": None}],
        "connections": [{"from": "t", "to": "m"}],
    }])

    assert registry.get("nulls").get_node("m").content == ""
