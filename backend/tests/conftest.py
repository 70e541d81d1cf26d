import pytest
from pathlib import Path
from unittest.mock import AsyncMock
from dotenv import load_dotenv

# Load the test environment FIRST, before any flowengine import reads settings.
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env.test")

from flowengine.engine.integrations import Integrations  # noqa: E402
from flowengine.models.flow import FlowDefinition  # noqa: E402


def build_flow(nodes, connections, **extra) -> FlowDefinition:
    """Build a flow from compact `(from, to)` connection tuples."""
    return FlowDefinition.model_validate({
        "id": extra.pop("id", 1),
        "slug": extra.pop("slug", "test-flow"),
        "nodes": nodes,
        "connections": [{"from": a, "to": b} for a, b in connections],
        **extra,
    })


@pytest.fixture
def make_flow():
    return build_flow


@pytest.fixture
def lead_flow():
    """trigger -> welcome -> budget(question) -> decide(condition) -> premium | standard"""
    return build_flow(
        nodes=[
            {"id": "trigger", "type": "trigger"},
            {"id": "welcome", "type": "message", "content": "Hi {{phone}}!"},
            {"id": "budget", "type": "question", "content": "What is your budget?", "variable": "budget",
             "options": [{"label": "High", "value": "high"}, {"label": "Low", "value": "low"}]},
            {"id": "decide", "type": "condition", "conditions": [
                {"if": "budget == 'high'", "goto": "premium"},
                {"else": True, "goto": "standard"},
            ]},
            {"id": "premium", "type": "message", "content": "Premium plan it is."},
            {"id": "standard", "type": "message", "content": "Standard plan it is."},
        ],
        connections=[("trigger", "welcome"), ("welcome", "budget"), ("budget", "decide")],
        trigger_config={"type": "keyword", "keywords": ["plan", "price"]},
    )


@pytest.fixture
def integrations():
    """Integrations whose adapters are all AsyncMocks."""
    return Integrations(
        webhook=AsyncMock(),
        completion=AsyncMock(),
        dispatch_action=AsyncMock(),
        sleep=AsyncMock(),
    )
