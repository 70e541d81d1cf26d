# backend/tests/integration/test_flow_service.py
import pytest
import structlog
from unittest.mock import AsyncMock, MagicMock

from flowengine.engine.driver import FlowExecutor
from flowengine.exceptions import FlowNotFoundError, SessionStoreError
from flowengine.models.session import ExecutionSession, OutputType, RunStatus
from flowengine.services.flow_registry import FlowRegistry
from flowengine.services.flow_service import FlowService
from flowengine.services.session_store import InMemorySessionStore, StoredSession


def registry_with(*flows):
    registry = FlowRegistry()
    registry.load([flow.model_dump(by_alias=True) for flow in flows])
    return registry


@pytest.fixture
def alerting():
    service = MagicMock()
    service.send_flow_alert = AsyncMock()
    return service


@pytest.fixture
def looping_flow(make_flow):
    return make_flow(
        nodes=[
            {"id": "t", "type": "trigger"},
            {"id": "a", "type": "message", "content": "ping"},
            {"id": "b", "type": "message", "content": "pong"},
        ],
        connections=[("t", "a"), ("a", "b"), ("b", "a")],
        id=2, slug="loop", trigger_config={"type": "always"},
    )


@pytest.fixture
def side_effect_flow(make_flow):
    return make_flow(
        nodes=[
            {"id": "t", "type": "trigger"},
            {"id": "act", "type": "action", "action": "notify_sales", "payload": {"phone": "{{phone}}"}},
            {"id": "wait", "type": "delay", "seconds": 1},
            {"id": "bye", "type": "message", "content": "Our team will call {{phone}}."},
        ],
        connections=[("t", "act"), ("act", "wait"), ("wait", "bye")],
        id=3, slug="handoff", trigger_config={"type": "keyword", "keywords": ["call me"]},
    )


# --- Live mode ---

@pytest.mark.asyncio
async def test_conversation_spans_two_messages(lead_flow, integrations, alerting):
    store = InMemorySessionStore()
    service = FlowService(registry_with(lead_flow), store, integrations, alerting=alerting)

    first = await service.process_message("555", "What's the price?")
    assert first.status == RunStatus.WAITING
    assert [r.content for r in first.responses] == ["Hi 555!", "What is your budget?"]

    record = await store.get("555")
    assert record.flow_slug == "test-flow"
    assert record.session.current_node_id == "budget"
    assert record.session.variables["initial_message"] == "What's the price?"

    second = await service.process_message("555", "high")
    assert second.status == RunStatus.COMPLETED
    assert [r.content for r in second.responses] == ["Premium plan it is."]
    assert await store.get("555") is None
    alerting.send_flow_alert.assert_not_awaited()


@pytest.mark.asyncio
async def test_new_session_is_seeded_with_context(lead_flow, integrations):
    service = FlowService(registry_with(lead_flow), InMemorySessionStore(), integrations)

    result = await service.process_message("555", "plan", context={"name": "Ana"})

    assert result.session_state.variables["name"] == "Ana"
    assert result.session_state.variables["phone"] == "555"


@pytest.mark.asyncio
async def test_no_matching_flow_returns_none(lead_flow, integrations):
    store = InMemorySessionStore()
    service = FlowService(registry_with(lead_flow), store, integrations)

    assert await service.process_message("555", "good morning") is None
    assert await store.get("555") is None


@pytest.mark.asyncio
async def test_session_for_removed_flow_is_cleared(lead_flow, integrations):
    store = InMemorySessionStore()
    await store.save(StoredSession(
        conversation_id="555", flow_id=99, flow_slug="retired",
        session=ExecutionSession(current_node_id="q", waiting_for_input=True),
    ))
    service = FlowService(registry_with(lead_flow), store, integrations)

    assert await service.process_message("555", "price") is None
    assert await store.get("555") is None


@pytest.mark.asyncio
async def test_abnormal_run_pauses_automation_until_reset(looping_flow, integrations, alerting):
    store = InMemorySessionStore()
    service = FlowService(
        registry_with(looping_flow), store, integrations, executor=FlowExecutor(max_steps=5), alerting=alerting,
    )

    result = await service.process_message("555", "hi")
    assert result.status == RunStatus.EXHAUSTED
    assert result.completed is True

    record = await store.get("555")
    assert record.abnormal is True
    assert record.status == RunStatus.EXHAUSTED
    alerting.send_flow_alert.assert_awaited_once()
    conversation_id, flow_id, flow_slug, alerted = alerting.send_flow_alert.await_args.args
    assert (conversation_id, flow_id, flow_slug) == ("555", 2, "loop")
    assert alerted.status == RunStatus.EXHAUSTED

    assert await service.process_message("555", "hello?") is None

    await service.reset_session("555")
    assert await service.get_session("555") is None
    assert (await service.process_message("555", "hi again")).status == RunStatus.EXHAUSTED


@pytest.mark.asyncio
async def test_live_mode_dispatches_actions_and_sleeps(side_effect_flow, integrations):
    service = FlowService(registry_with(side_effect_flow), InMemorySessionStore(), integrations)

    result = await service.process_message("555", "please call me")

    integrations.dispatch_action.assert_awaited_once_with("notify_sales", {"phone": "555"}, result.session_state.variables)
    integrations.sleep.assert_awaited_once_with(1)
    assert result.responses[-1].content == "Our team will call 555."


@pytest.mark.asyncio
async def test_store_failure_skips_the_message(lead_flow, integrations):
    store = AsyncMock()
    store.get.side_effect = SessionStoreError("redis down")
    service = FlowService(registry_with(lead_flow), store, integrations)

    assert await service.process_message("555", "price") is None
    store.save.assert_not_awaited()


@pytest.mark.asyncio
async def test_save_failure_still_returns_result(lead_flow, integrations):
    store = AsyncMock()
    store.get.return_value = None
    store.save.side_effect = SessionStoreError("redis down")
    service = FlowService(registry_with(lead_flow), store, integrations)

    result = await service.process_message("555", "price")

    assert result.status == RunStatus.WAITING


# --- Simulation mode ---

@pytest.mark.asyncio
async def test_simulation_has_no_side_effects(side_effect_flow, integrations):
    store = InMemorySessionStore()
    service = FlowService(registry_with(side_effect_flow), store, integrations)

    result = await service.simulate(side_effect_flow, "call me", ExecutionSession(variables={"phone": "000"}))

    integrations.dispatch_action.assert_not_awaited()
    integrations.sleep.assert_not_awaited()
    assert [r.type for r in result.responses] == [OutputType.SYSTEM, OutputType.TYPING, OutputType.BOT]
    assert result.responses[-1].content == "Our team will call 000."
    assert await store.get("000") is None


@pytest.mark.asyncio
async def test_simulation_matches_live_outputs(lead_flow, integrations):
    service = FlowService(registry_with(lead_flow), InMemorySessionStore(), integrations)

    preview = await service.simulate(lead_flow, "price", ExecutionSession(variables={"phone": "555"}))
    live = await service.process_message("555", "price")

    assert [r.content for r in preview.responses] == [r.content for r in live.responses]
    assert preview.session_state.current_node_id == live.session_state.current_node_id


# --- Registry ---

@pytest.mark.asyncio
async def test_registry_skips_bad_documents_and_orders_defaults_first(lead_flow):
    documents = [
        lead_flow.model_dump(by_alias=True),
        {"id": 7, "slug": "broken", "nodes": "not json"},
        {"id": 8, "slug": "fallback", "isDefault": True, "nodes": [{"id": "t", "type": "trigger"}]},
    ]
    registry = FlowRegistry(source=AsyncMock(return_value=documents))

    flows = await registry.reload()

    assert [flow.slug for flow in flows] == ["fallback", "test-flow"]
    assert registry.find("1").slug == "test-flow"
    assert registry.find(8).slug == "fallback"
    assert registry.find("fallback").id == 8
    with pytest.raises(FlowNotFoundError):
        registry.get("broken")


@pytest.mark.asyncio
async def test_runs_log_with_conversation_and_flow_keys(lead_flow, integrations, mocker):
    seen = []
    original_run = FlowExecutor.run

    async def spy(self, *args, **kwargs):
        seen.append(structlog.contextvars.get_contextvars())
        return await original_run(self, *args, **kwargs)

    mocker.patch.object(FlowExecutor, "run", spy)
    service = FlowService(registry_with(lead_flow), InMemorySessionStore(), integrations)

    await service.process_message("555", "price")

    assert seen == [{"conversation_id": "555", "flow": "test-flow"}]
    assert structlog.contextvars.get_contextvars() == {}
