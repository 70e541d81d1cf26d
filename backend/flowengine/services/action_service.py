# /flowengine/services/action_service.py

from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from flowengine.engine.integrations import WebhookAdapter, WebhookRequest
from flowengine.config.settings import settings

# Registry of side effects triggered by `action` nodes, keyed by action name.
# The engine only announces the action; whatever it does lives here.

log = structlog.get_logger(__name__)

ActionHandler = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[None]]


class ActionDispatcher:
    def __init__(self, webhook: Optional[WebhookAdapter] = None):
        self._handlers: Dict[str, ActionHandler] = {}
        self.webhook = webhook
        self.register("notify_sales", self._notify_sales)
        self.register("create_ticket", self._create_ticket)
        self.register("webhook", self._post_webhook)

    def register(self, action: str, handler: ActionHandler) -> None:
        self._handlers[action] = handler

    @property
    def actions(self):
        return sorted(self._handlers)

    async def dispatch(self, action: str, payload: Dict[str, Any], variables: Dict[str, Any]) -> None:
        handler = self._handlers.get(action)
        if handler is None:
            log.warning("Unknown action type", action=action)
            return
        try:
            await handler(payload, variables)
        except Exception as e:
            log.error("Action handler failed", action=action, error=str(e), exc_info=True)

    # The dispatcher is handed to the Driver as the `dispatch_action` adapter.
    __call__ = dispatch

    async def _notify_sales(self, payload: Dict[str, Any], variables: Dict[str, Any]) -> None:
        log.info("Notify sales team", payload=payload, phone=variables.get("phone"))

    async def _create_ticket(self, payload: Dict[str, Any], variables: Dict[str, Any]) -> None:
        log.info("Create support ticket", payload=payload, phone=variables.get("phone"))

    async def _post_webhook(self, payload: Dict[str, Any], variables: Dict[str, Any]) -> None:
        url = payload.get("url")
        if not url:
            log.warning("Webhook action without URL")
            return
        if self.webhook is None:
            log.warning("Webhook action skipped, no adapter configured", url=url)
            return
        result = await self.webhook(WebhookRequest(
            url=url,
            method="POST",
            headers={"Content-Type": "application/json"},
            body=payload.get("data") or variables,
            timeout_ms=settings.webhook_default_timeout_ms,
        ))
        log.info("Webhook action sent", url=url, result=result.model_dump())
