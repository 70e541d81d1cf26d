# /flowengine/engine/executors.py

import asyncio
import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Type

import structlog
from pydantic import BaseModel, ValidationError

from flowengine.config.settings import settings
from flowengine.engine.conditions import Unparseable, evaluate_comparison, parse_condition
from flowengine.engine.integrations import (
    CompletionRequest,
    CompletionResult,
    IntegrationFailure,
    Integrations,
    WebhookRequest,
    WebhookResponse,
)
from flowengine.engine.interpolation import interpolate, interpolate_object
from flowengine.engine.variables import VariableStore, stringify
from flowengine.models.flow import (
    NODE_TYPES,
    ActionNode,
    AIResponseNode,
    ConditionNode,
    DelayNode,
    EndNode,
    MessageNode,
    QuestionNode,
    TransferNode,
    TriggerNode,
    UnknownNode,
    WebhookNode,
)
from flowengine.models.session import Output, OutputType, RunStatus, StepStatus
from flowengine.utils.metrics import integration_calls_counter

# One executor per node variant. An executor reads its node and the Variable
# Store, may write to the store, and reports a control outcome. Executors
# never touch the session or the flow; the Driver owns both.

log = structlog.get_logger(__name__)

# Extra time granted to an adapter beyond its own timeout before the engine
# gives up on it.
ADAPTER_GRACE_SECONDS = 1.0


class Outcome(str, Enum):
    CONTINUE = "continue"
    HALT = "halt"
    TERMINATE = "terminate"


@dataclass
class NodeResult:
    outcome: Outcome
    outputs: List[Output] = field(default_factory=list)
    # Direct jump target (condition nodes); bypasses the connection table.
    goto: Optional[str] = None
    # Final status for TERMINATE outcomes.
    run_status: Optional[RunStatus] = None
    summary: str = ""
    status: StepStatus = StepStatus.SUCCESS


@dataclass
class ExecutionContext:
    store: VariableStore
    integrations: Integrations


Executor = Callable[[Any, ExecutionContext], Awaitable[NodeResult]]


async def execute_trigger(node: TriggerNode, ctx: ExecutionContext) -> NodeResult:
    return NodeResult(Outcome.CONTINUE, summary="Trigger activated")


async def execute_message(node: MessageNode, ctx: ExecutionContext) -> NodeResult:
    text = interpolate(node.content, ctx.store)
    return NodeResult(
        Outcome.CONTINUE,
        outputs=[Output(type=OutputType.BOT, content=text, node_id=node.id)],
        summary=text,
    )


async def execute_question(node: QuestionNode, ctx: ExecutionContext) -> NodeResult:
    text = interpolate(node.content, ctx.store)
    return NodeResult(
        Outcome.HALT,
        outputs=[Output(type=OutputType.BOT, content=text, node_id=node.id, options=list(node.options))],
        summary=f"Question: {text} (waiting for: {node.variable})",
    )


async def execute_condition(node: ConditionNode, ctx: ExecutionContext) -> NodeResult:
    """
    First match wins over the ordered branch list; an `else` branch matches
    wherever it sits once no earlier branch matched. With no match the node
    falls through to its outgoing connection, reported as a warning.
    """
    malformed = []
    for index, branch in enumerate(node.conditions):
        if branch.is_else:
            matched = "else"
        else:
            parsed = parse_condition(branch.expression)
            if isinstance(parsed, Unparseable):
                malformed.append(f"#{index}: {parsed.reason}")
                continue
            if not evaluate_comparison(parsed, ctx.store):
                continue
            matched = branch.expression

        if not branch.goto:
            return NodeResult(
                Outcome.CONTINUE,
                summary=f"Condition matched {matched} with no goto; following connection",
                status=StepStatus.WARNING,
            )
        return NodeResult(Outcome.CONTINUE, goto=branch.goto, summary=f"Condition evaluated: {matched} -> {branch.goto}")

    summary = "No condition matched; following connection"
    if malformed:
        summary += f" (malformed: {', '.join(malformed)})"
    return NodeResult(Outcome.CONTINUE, summary=summary, status=StepStatus.WARNING)


async def execute_action(node: ActionNode, ctx: ExecutionContext) -> NodeResult:
    notice = Output(type=OutputType.SYSTEM, content=f"[Action: {node.action}]", node_id=node.id)
    dispatch = ctx.integrations.dispatch_action
    if dispatch is None:
        return NodeResult(Outcome.CONTINUE, outputs=[notice], summary=f"Action: {node.action} (not dispatched)")

    payload = interpolate_object(node.payload, ctx.store)
    try:
        await dispatch(node.action, payload, ctx.store.snapshot())
    except Exception as e:
        log.error("Action dispatch failed", action=node.action, node_id=node.id, error=str(e))
        integration_calls_counter.labels(integration="action", status="error").inc()
        return NodeResult(
            Outcome.CONTINUE, outputs=[notice], summary=f"Action: {node.action} - failed: {e}", status=StepStatus.ERROR
        )
    integration_calls_counter.labels(integration="action", status="success").inc()
    return NodeResult(Outcome.CONTINUE, outputs=[notice], summary=f"Action: {node.action} - dispatched")


def _parse_document(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw
    return raw


def build_webhook_request(node: WebhookNode, store: VariableStore) -> WebhookRequest:
    method = (node.method or "POST").upper()

    headers = {"Content-Type": "application/json"}
    parsed_headers = _parse_document(node.headers)
    if isinstance(parsed_headers, dict):
        headers.update({str(k): str(v) for k, v in interpolate_object(parsed_headers, store).items()})
    elif parsed_headers:
        log.warning("Invalid webhook headers, using defaults", node_id=node.id)

    body = None
    if method != "GET" and node.body not in (None, ""):
        parsed_body = _parse_document(node.body)
        if isinstance(parsed_body, (dict, list)):
            body = interpolate_object(parsed_body, store)
        else:
            body = interpolate(str(node.body), store)

    timeout_ms = node.timeout_ms if node.timeout_ms and node.timeout_ms > 0 else settings.webhook_default_timeout_ms
    return WebhookRequest(
        url=interpolate(node.url, store).strip(),
        method=method,
        headers=headers,
        body=body,
        timeout_ms=min(timeout_ms, settings.webhook_max_timeout_ms),
    )


def _coerce_reply(reply: Any, result_model: Type[BaseModel], integration: str):
    """Adapters may answer with plain mappings (`{status, body}`, `{text}`); anything unusable is a failure."""
    if isinstance(reply, (result_model, IntegrationFailure)):
        return reply
    if isinstance(reply, Mapping):
        model = IntegrationFailure if "kind" in reply and "message" in reply else result_model
        try:
            return model.model_validate(dict(reply))
        except ValidationError as e:
            log.warning("Malformed adapter reply", integration=integration, errors=e.error_count())
            return IntegrationFailure(kind="error", message=f"Malformed {integration} reply")
    log.warning("Unexpected adapter reply", integration=integration, reply_type=type(reply).__name__)
    return IntegrationFailure(kind="error", message=f"Unexpected {integration} reply of type {type(reply).__name__}")


async def _call_adapter(adapter, request, timeout_seconds: float, integration: str, result_model: Type[BaseModel]):
    """Bounded call into an adapter; whatever goes wrong comes back as an IntegrationFailure."""
    if adapter is None:
        return IntegrationFailure(kind="unavailable", message=f"No {integration} adapter configured")
    try:
        reply = await asyncio.wait_for(adapter(request), timeout=timeout_seconds + ADAPTER_GRACE_SECONDS)
    except asyncio.TimeoutError:
        return IntegrationFailure(kind="timeout", message=f"{integration} call timed out after {timeout_seconds:g}s")
    except Exception as e:
        log.error("Integration adapter raised", integration=integration, error=str(e))
        return IntegrationFailure(kind="error", message=str(e) or e.__class__.__name__)
    return _coerce_reply(reply, result_model, integration)


async def execute_webhook(node: WebhookNode, ctx: ExecutionContext) -> NodeResult:
    request = build_webhook_request(node, ctx.store)
    if not request.url:
        result = IntegrationFailure(kind="invalid_request", message="Webhook URL is empty")
    else:
        result = await _call_adapter(
            ctx.integrations.webhook, request, request.timeout_ms / 1000, "webhook", WebhookResponse
        )

    if isinstance(result, WebhookResponse):
        if node.variable:
            ctx.store.set(node.variable, {"ok": result.ok, "status": result.status, "body": result.body})
        return NodeResult(
            Outcome.CONTINUE,
            summary=f"Webhook {request.method} {request.url}: {result.status}",
            status=StepStatus.SUCCESS if result.ok else StepStatus.WARNING,
        )

    log.warning("Webhook failed", node_id=node.id, kind=result.kind, error=result.message)
    if node.variable:
        ctx.store.set(node.variable, result.as_marker())
    return NodeResult(
        Outcome.CONTINUE,
        summary=f"Webhook Error ({result.kind}): {result.message}",
        status=StepStatus.ERROR,
    )


def build_completion_request(node: AIResponseNode, store: VariableStore) -> CompletionRequest:
    system_prompt = node.system_prompt or settings.ai_default_system_prompt
    user_prompt = node.user_prompt or stringify(store.get("initial_message"))
    return CompletionRequest(
        system_prompt=interpolate(system_prompt, store),
        user_prompt=interpolate(user_prompt, store),
        model=node.model or settings.ai_default_model,
        temperature=node.temperature if node.temperature is not None else settings.ai_default_temperature,
        max_tokens=node.max_tokens or settings.ai_default_max_tokens,
    )


async def execute_ai_response(node: AIResponseNode, ctx: ExecutionContext) -> NodeResult:
    request = build_completion_request(node, ctx.store)
    result = await _call_adapter(
        ctx.integrations.completion, request, settings.ai_timeout_seconds, "completion", CompletionResult
    )

    if isinstance(result, CompletionResult) and not result.text.strip():
        result = IntegrationFailure(kind="empty_response", message="Completion provider returned no text")

    if isinstance(result, CompletionResult):
        text = result.text.strip()
        if node.variable:
            ctx.store.set(node.variable, text)
        return NodeResult(
            Outcome.CONTINUE,
            outputs=[Output(type=OutputType.BOT, content=text, node_id=node.id)],
            summary=f"AI Response: {text[:100]}",
        )

    log.warning("AI completion failed", node_id=node.id, kind=result.kind, error=result.message)
    if node.variable:
        ctx.store.set(node.variable, result.as_marker())
    return NodeResult(
        Outcome.CONTINUE,
        outputs=[Output(type=OutputType.SYSTEM, content="[AI response unavailable]", node_id=node.id)],
        summary=f"AI Error ({result.kind}): {result.message}",
        status=StepStatus.ERROR,
    )


async def execute_delay(node: DelayNode, ctx: ExecutionContext) -> NodeResult:
    seconds = node.seconds if node.seconds is not None else settings.delay_default_seconds
    if not math.isfinite(seconds) or seconds < 0:
        seconds = 0.0

    outputs = []
    if node.typing_indicator:
        outputs.append(Output(type=OutputType.TYPING, node_id=node.id, delay_seconds=seconds))

    if ctx.integrations.sleep is not None and seconds > 0:
        await ctx.integrations.sleep(min(seconds, settings.delay_max_seconds))
    return NodeResult(Outcome.CONTINUE, outputs=outputs, summary=f"Delay: {seconds:g} seconds")


async def execute_transfer(node: TransferNode, ctx: ExecutionContext) -> NodeResult:
    text = interpolate(node.content or settings.transfer_default_text, ctx.store)
    return NodeResult(
        Outcome.TERMINATE,
        outputs=[Output(type=OutputType.HANDOFF, content=text, node_id=node.id)],
        run_status=RunStatus.TRANSFERRED,
        summary=f"Transferred to human: {text}",
    )


async def execute_end(node: EndNode, ctx: ExecutionContext) -> NodeResult:
    return NodeResult(Outcome.TERMINATE, run_status=RunStatus.COMPLETED, summary="Flow ended")


async def execute_unknown(node: UnknownNode, ctx: ExecutionContext) -> NodeResult:
    return NodeResult(
        Outcome.CONTINUE,
        summary=f"Unknown node type: {node.declared_type}",
        status=StepStatus.WARNING,
    )


NODE_EXECUTORS: Dict[Type, Executor] = {
    TriggerNode: execute_trigger,
    MessageNode: execute_message,
    QuestionNode: execute_question,
    ConditionNode: execute_condition,
    ActionNode: execute_action,
    WebhookNode: execute_webhook,
    AIResponseNode: execute_ai_response,
    DelayNode: execute_delay,
    TransferNode: execute_transfer,
    EndNode: execute_end,
    UnknownNode: execute_unknown,
}

_unhandled = [cls.__name__ for cls in NODE_TYPES if cls not in NODE_EXECUTORS]
if _unhandled:
    raise RuntimeError(f"Node types without an executor: {', '.join(_unhandled)}")


async def execute_node(node, ctx: ExecutionContext) -> NodeResult:
    return await NODE_EXECUTORS[type(node)](node, ctx)
