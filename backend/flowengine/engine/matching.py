# /flowengine/engine/matching.py

from typing import Any, Iterable, Mapping, Optional

import structlog

from flowengine.models.flow import FlowDefinition, TriggerConfig

# Chooses which flow a brand-new conversation enters. Flows are checked in
# order; the first default flow is the fallback when no trigger matches.

log = structlog.get_logger(__name__)


def _nested(mapping: Optional[Mapping[str, Any]], *keys: str) -> Any:
    current: Any = mapping
    for key in keys:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def matches_trigger(
    trigger: TriggerConfig,
    message: str,
    classification: Optional[Mapping[str, Any]] = None,
) -> bool:
    normalized = (message or "").strip().lower()

    if trigger.type == "keyword":
        return any(kw and kw.lower() in normalized for kw in trigger.keywords)

    if trigger.type == "classification":
        if not classification:
            return False
        conditions = trigger.conditions or {}

        if conditions.get("intent"):
            intents = conditions["intent"]
            intents = intents if isinstance(intents, list) else [intents]
            if _nested(classification, "intent", "type") not in intents:
                return False

        if conditions.get("urgency") and _nested(classification, "urgency", "level") != conditions["urgency"]:
            return False

        if conditions.get("lead_score_min") is not None:
            score = _nested(classification, "leadScore", "value")
            try:
                if float(score) < float(conditions["lead_score_min"]):
                    return False
            except (TypeError, ValueError):
                return False

        return True

    return trigger.type == "always"


def match_flow(
    flows: Iterable[FlowDefinition],
    message: str,
    classification: Optional[Mapping[str, Any]] = None,
) -> Optional[FlowDefinition]:
    flows = list(flows)
    for flow in flows:
        if matches_trigger(flow.trigger_config, message, classification):
            log.debug("Flow trigger matched", flow=flow.label, trigger=flow.trigger_config.type)
            return flow
    return next((flow for flow in flows if flow.is_default), None)
