# /flowengine/engine/driver.py

"""
Execution Driver.

Walks a flow graph for one inbound message and returns an ExecutionResult.
The Driver keeps no state between calls: the flow is read-only input and
the session is a value received and returned.

A run either:
- halts on a question (status `waiting`, the session points at the question),
- terminates on `end` / `transfer` or an implicit end of graph,
- or stops abnormally when the step budget is exhausted or an executor breaks.

No failure propagates to the caller as an exception.
"""

import inspect
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from flowengine.config.settings import settings
from flowengine.engine.executors import ExecutionContext, NodeResult, Outcome, execute_node
from flowengine.engine.integrations import Integrations
from flowengine.engine.variables import VariableStore
from flowengine.models.flow import FlowDefinition, QuestionNode
from flowengine.models.session import (
    ExecutionResult,
    ExecutionSession,
    Output,
    RunStatus,
    StepRecord,
    StepStatus,
)
from flowengine.utils.metrics import flow_run_duration_histogram, flow_runs_counter, flow_steps_counter

log = structlog.get_logger(__name__)

STEP_OUTPUT_LIMIT = 500


def match_answer(node: QuestionNode, text: str) -> Any:
    """Map an inbound answer to an option value: label case-insensitively, value exactly."""
    if not node.options:
        return text
    normalized = text.strip().casefold()
    for option in node.options:
        if option.label.strip().casefold() == normalized or str(option.value) == text:
            return option.value
    return text


class _Run:
    """Mutable bookkeeping for one invocation; never outlives run()."""

    def __init__(self, flow: FlowDefinition, store: VariableStore, integrations: Integrations, max_steps: int):
        self.flow = flow
        self.store = store
        self.integrations = integrations
        self.max_steps = max_steps
        self.responses: List[Output] = []
        self.steps: List[StepRecord] = []
        self.steps_taken = 0

    async def emit(self, event_type: str, **data: Any) -> None:
        callback = self.integrations.on_event
        if callback is None:
            return
        event = {
            "type": event_type,
            "flowId": self.flow.id,
            "flowSlug": self.flow.slug,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **data,
        }
        try:
            outcome = callback(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            log.debug("Error emitting flow event", event_type=event_type, error=str(e))

    def finish(
        self,
        status: RunStatus,
        node_id: Optional[str],
        *,
        waiting: bool = False,
        error: Optional[str] = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            responses=self.responses,
            session_state=ExecutionSession(
                current_node_id=node_id,
                variables=self.store.snapshot(),
                waiting_for_input=waiting,
            ),
            completed=status != RunStatus.WAITING,
            status=status,
            steps=self.steps,
            final_node_id=node_id,
            error=error,
        )

    def record(self, node, result: NodeResult, started: float) -> None:
        summary = result.summary[:STEP_OUTPUT_LIMIT] if result.summary else None
        self.steps.append(
            StepRecord(
                node_id=node.id,
                node_type=node.type,
                outcome=result.outcome.value,
                status=result.status,
                output=summary,
                duration_ms=round((time.perf_counter() - started) * 1000, 3),
            )
        )
        flow_steps_counter.labels(node_type=node.type, status=result.status.value).inc()

    def successor(self, node_id: str):
        connection = self.flow.first_connection_from(node_id)
        if connection is None:
            return None
        target = self.flow.get_node(connection.to_node)
        if target is None:
            log.warning("Dangling connection", flow=self.flow.label, source=node_id, target=connection.to_node)
        return target

    async def walk(self, node) -> ExecutionResult:
        while True:
            if self.steps_taken >= self.max_steps:
                log.error(
                    "Step budget exhausted",
                    flow=self.flow.label, node_id=node.id, max_steps=self.max_steps,
                )
                return self.finish(
                    RunStatus.EXHAUSTED, node.id,
                    error=f"Step budget of {self.max_steps} exhausted at node '{node.id}'",
                )
            self.steps_taken += 1

            await self.emit("node_started", nodeId=node.id, nodeType=node.type, variables=self.store.snapshot())
            started = time.perf_counter()
            try:
                result = await execute_node(node, ExecutionContext(store=self.store, integrations=self.integrations))
            except Exception as e:
                log.error("Node executor failed", flow=self.flow.label, node_id=node.id, error=str(e), exc_info=True)
                self.record(
                    node,
                    NodeResult(Outcome.TERMINATE, summary=f"Executor error: {e}", status=StepStatus.ERROR),
                    started,
                )
                return self.finish(RunStatus.FAILED, node.id, error=f"Node '{node.id}' failed: {e}")

            self.record(node, result, started)
            self.responses.extend(result.outputs)
            await self.emit(
                "node_completed",
                nodeId=node.id, nodeType=node.type, status=result.status.value,
                output=(result.summary or "")[:200], variables=self.store.snapshot(),
            )

            if result.outcome == Outcome.HALT:
                return self.finish(RunStatus.WAITING, node.id, waiting=True)
            if result.outcome == Outcome.TERMINATE:
                return self.finish(result.run_status or RunStatus.COMPLETED, node.id)

            if result.goto is not None:
                target = self.flow.get_node(result.goto)
                if target is not None:
                    node = target
                    continue
                log.warning("Condition goto target missing", flow=self.flow.label, node_id=node.id, goto=result.goto)

            following = self.successor(node.id)
            if following is None:
                return self.finish(RunStatus.COMPLETED, node.id)
            node = following


class FlowExecutor:
    def __init__(self, max_steps: Optional[int] = None):
        self.max_steps = settings.max_steps if max_steps is None else max_steps
        if self.max_steps < 1:
            raise ValueError(f"max_steps must be at least 1, got {self.max_steps}")

    async def run(
        self,
        flow: FlowDefinition,
        session: Optional[ExecutionSession],
        inbound_text: str,
        integrations: Optional[Integrations] = None,
    ) -> ExecutionResult:
        integrations = integrations or Integrations()
        session = session or ExecutionSession()
        run = _Run(flow, VariableStore(session.variables), integrations, self.max_steps)
        started = time.perf_counter()
        log.debug("Flow run started", flow=flow.label, resume=session.waiting_for_input)
        await run.emit("flow_started", message=inbound_text, resume=session.waiting_for_input)

        try:
            result = await self._dispatch(run, session, inbound_text or "")
        except Exception as e:
            log.error("Flow run failed", flow=flow.label, error=str(e), exc_info=True)
            result = run.finish(RunStatus.FAILED, session.current_node_id, error=str(e))

        flow_runs_counter.labels(status=result.status.value).inc()
        flow_run_duration_histogram.observe(time.perf_counter() - started)
        await run.emit(
            "flow_finished",
            status=result.status.value, finalNodeId=result.final_node_id,
            error=result.error, variables=result.session_state.variables,
        )
        log.info(
            "Flow run finished",
            flow=flow.label, status=result.status.value, steps=len(result.steps),
            final_node_id=result.final_node_id,
        )
        return result

    async def _dispatch(self, run: _Run, session: ExecutionSession, text: str) -> ExecutionResult:
        flow = run.flow

        if session.waiting_for_input and session.current_node_id:
            waiting_node = flow.get_node(session.current_node_id)
            if isinstance(waiting_node, QuestionNode):
                return await self._resume(run, waiting_node, text)
            log.warning(
                "Session is waiting on a node that is not a question; restarting",
                flow=flow.label, node_id=session.current_node_id,
            )

        for name, value in flow.variables.items():
            run.store.setdefault(name, value)
        run.store.set("initial_message", text)

        start = flow.start_node()
        if start is None:
            log.warning("Flow has no start node", flow=flow.label)
            return run.finish(RunStatus.COMPLETED, None, error="Flow has no start node")

        first = run.successor(start.id)
        if first is None:
            return run.finish(RunStatus.COMPLETED, start.id)
        return await run.walk(first)

    async def _resume(self, run: _Run, question: QuestionNode, text: str) -> ExecutionResult:
        if question.variable:
            value = match_answer(question, text)
            run.store.set(question.variable, value)
            log.debug("Variable saved", variable=question.variable, value=value)

        following = run.successor(question.id)
        if following is None:
            return run.finish(RunStatus.COMPLETED, question.id)
        return await run.walk(following)


async def run(
    flow: FlowDefinition,
    session: Optional[ExecutionSession],
    inbound_text: str,
    integrations: Optional[Integrations] = None,
    *,
    max_steps: Optional[int] = None,
) -> ExecutionResult:
    """Module-level entry point: run one inbound message through `flow`."""
    return await FlowExecutor(max_steps=max_steps).run(flow, session, inbound_text, integrations)
