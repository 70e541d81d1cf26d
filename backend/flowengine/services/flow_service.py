# /flowengine/services/flow_service.py

"""
Live and simulation entry points around the Execution Driver.

- Live mode loads the conversation's stored session, runs the Driver with
  the real integrations, then saves (waiting / abnormal) or deletes
  (finished) the session. Runs for one conversation are serialized here.
- Simulation mode runs the same Driver with nothing persisted, no sleeping
  and no action side effects; its result is for previewing a flow.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import structlog

from flowengine.engine.driver import FlowExecutor
from flowengine.engine.integrations import Integrations
from flowengine.engine.matching import match_flow
from flowengine.exceptions import SessionStoreError
from flowengine.models.flow import FlowDefinition
from flowengine.models.session import ExecutionResult, ExecutionSession, RunStatus
from flowengine.services.flow_registry import FlowRegistry, FlowSource
from flowengine.services.session_store import SessionStore, StoredSession, create_session_store
from flowengine.utils.alerting import AlertingService, alerting_service
from flowengine.utils.logging import flow_log_context

log = structlog.get_logger(__name__)


class FlowService:
    def __init__(
        self,
        registry: FlowRegistry,
        store: SessionStore,
        integrations: Optional[Integrations] = None,
        executor: Optional[FlowExecutor] = None,
        alerting: Optional[AlertingService] = None,
    ):
        self.registry = registry
        self.store = store
        self.integrations = integrations or Integrations(sleep=asyncio.sleep)
        self.executor = executor or FlowExecutor()
        self.alerting = alerting or alerting_service
        self._locks: Dict[str, List[Any]] = {}

    @property
    def simulation_integrations(self) -> Integrations:
        return replace(self.integrations, dispatch_action=None, sleep=None)

    @asynccontextmanager
    async def _conversation_lock(self, conversation_id: str):
        entry = self._locks.setdefault(conversation_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(conversation_id, None)

    async def process_message(
        self,
        conversation_id: str,
        text: str,
        context: Optional[Mapping[str, Any]] = None,
        classification: Optional[Mapping[str, Any]] = None,
    ) -> Optional[ExecutionResult]:
        """
        Run one inbound message through the conversation's flow.

        Returns None when no flow handles the message: no active flow
        matches, the stored session's flow is gone, a previous run ended
        abnormally (automation stays paused until reset_session), or the
        session store is unavailable.
        """
        async with self._conversation_lock(conversation_id):
            with flow_log_context(conversation_id=conversation_id):
                return await self._process(conversation_id, text, context, classification)

    async def _process(
        self,
        conversation_id: str,
        text: str,
        context: Optional[Mapping[str, Any]],
        classification: Optional[Mapping[str, Any]],
    ) -> Optional[ExecutionResult]:
        try:
            record = await self.store.get(conversation_id)
        except SessionStoreError as e:
            log.error("Session store unavailable", error=str(e))
            return None

        if record is not None and record.abnormal:
            log.warning("Automation paused after abnormal run", status=record.status.value, error=record.error)
            return None

        if record is not None:
            flow = self.registry.find(record.flow_id) or self.registry.find(record.flow_slug)
            if flow is None:
                log.warning("Flow not found, clearing session", flow_id=record.flow_id)
                await self._delete(conversation_id)
                return None
            session = record.session
        else:
            flow = match_flow(self.registry.active_flows, text, classification)
            if flow is None:
                log.debug("No matching visual flow found")
                return None
            log.info("Starting visual flow", flow=flow.label, trigger=flow.trigger_config.type)
            session = ExecutionSession(variables={"phone": conversation_id, **dict(context or {})})
            record = StoredSession(
                conversation_id=conversation_id, flow_id=flow.id, flow_slug=flow.slug, session=session,
            )

        with flow_log_context(flow=flow.label):
            result = await self.executor.run(flow, session, text, self.integrations)
            await self._persist(record, result)
        return result

    async def _persist(self, record: StoredSession, result: ExecutionResult) -> None:
        conversation_id = record.conversation_id
        if result.status == RunStatus.WAITING or result.abnormal:
            updated = record.model_copy(update={
                "session": result.session_state,
                "status": result.status,
                "abnormal": result.abnormal,
                "error": result.error,
                "updated_at": datetime.now(timezone.utc),
            })
            try:
                await self.store.save(updated)
            except SessionStoreError as e:
                log.error("Failed to save session", conversation_id=conversation_id, error=str(e))
            if result.abnormal:
                log.error(
                    "Flow run ended abnormally",
                    conversation_id=conversation_id, flow_id=record.flow_id,
                    status=result.status.value, error=result.error,
                )
                await self.alerting.send_flow_alert(conversation_id, record.flow_id, record.flow_slug, result)
            return
        await self._delete(conversation_id)

    async def _delete(self, conversation_id: str) -> None:
        try:
            await self.store.delete(conversation_id)
        except SessionStoreError as e:
            log.error("Failed to delete session", conversation_id=conversation_id, error=str(e))

    async def simulate(
        self,
        flow: FlowDefinition,
        text: str,
        session: Optional[ExecutionSession] = None,
    ) -> ExecutionResult:
        """Preview a flow. The returned session is the caller's to keep or discard."""
        return await self.executor.run(flow, session, text, self.simulation_integrations)

    async def get_session(self, conversation_id: str) -> Optional[StoredSession]:
        return await self.store.get(conversation_id)

    async def reset_session(self, conversation_id: str) -> None:
        """Forget a conversation's flow position, including an abnormal one."""
        async with self._conversation_lock(conversation_id):
            await self._delete(conversation_id)


def create_flow_service(source: Optional[FlowSource] = None) -> FlowService:
    """Wire a FlowService with the default live adapters."""
    from flowengine.services.action_service import ActionDispatcher
    from flowengine.services.ai_service import ai_service
    from flowengine.services.webhook_service import webhook_service

    integrations = Integrations(
        webhook=webhook_service,
        completion=ai_service,
        dispatch_action=ActionDispatcher(webhook=webhook_service),
        sleep=asyncio.sleep,
    )
    return FlowService(FlowRegistry(source), create_session_store(), integrations)
