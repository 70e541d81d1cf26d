# /flowengine/services/flow_registry.py

from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional

import structlog
from pydantic import ValidationError

from flowengine.engine.validator import validate_flow
from flowengine.exceptions import FlowNotFoundError
from flowengine.models.flow import FlowDefinition

# Holds the active flows handed over by the persistence layer. Documents that
# do not parse are skipped; validation problems are logged, not fatal.

log = structlog.get_logger(__name__)

FlowSource = Callable[[], Awaitable[Iterable[Mapping[str, Any]]]]


class FlowRegistry:
    def __init__(self, source: Optional[FlowSource] = None):
        self.source = source
        self._flows: List[FlowDefinition] = []

    @property
    def active_flows(self) -> List[FlowDefinition]:
        return list(self._flows)

    def load(self, documents: Iterable[Mapping[str, Any]]) -> List[FlowDefinition]:
        flows = []
        for document in documents:
            try:
                flow = FlowDefinition.model_validate(document)
            except ValidationError as e:
                log.error("Skipping unparseable flow", flow_id=document.get("id"), errors=e.error_count())
                continue

            report = validate_flow(flow)
            for issue in report["issues"]:
                log.warning(
                    "Flow validation issue",
                    flow=flow.label, severity=issue["severity"],
                    code=issue["error_code"], node_id=issue["node_id"], detail=issue["message"],
                )
            flows.append(flow)

        # Default flows first, then authoring order.
        self._flows = sorted(flows, key=lambda f: f.is_default, reverse=True)
        log.info("Visual flows loaded", count=len(self._flows))
        return self.active_flows

    async def reload(self) -> List[FlowDefinition]:
        if self.source is None:
            return self.active_flows
        documents = await self.source()
        return self.load(documents)

    def find(self, identifier: Any) -> Optional[FlowDefinition]:
        if identifier is None:
            return None
        key = str(identifier)
        return next(
            (flow for flow in self._flows if str(flow.id) == key or flow.slug == key),
            None,
        )

    def get(self, identifier: Any) -> FlowDefinition:
        flow = self.find(identifier)
        if flow is None:
            raise FlowNotFoundError(str(identifier))
        return flow
