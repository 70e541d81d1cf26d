# /flowengine/utils/alerting.py

import httpx
import logging
from typing import Optional, Dict, Any
from datetime import datetime, timezone

from flowengine.config.settings import settings
from flowengine.models.session import ExecutionResult

# Critical alerts for flow runs that ended stuck (`exhausted`) or broken
# (`failed`), posted to an external webhook so monitoring can tell them
# apart from normal completions.

logger = logging.getLogger(__name__)


class AlertingService:
    def __init__(self, webhook_url: Optional[str], http_client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url
        if webhook_url:
            self.client = http_client or httpx.AsyncClient(timeout=5.0)
        else:
            self.client = None

    async def send_critical_alert(self, error: str, context: Dict[str, Any]):
        if not self.client:
            return
        alert_data = {
            "severity": "critical",
            "service": "flow-engine",
            "environment": settings.environment,
            "error": error,
            "context": context,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            response = await self.client.post(self.webhook_url, json=alert_data)
            if response.is_error:
                logger.warning(f"Alert webhook answered {response.status_code} for '{error}'")
        except httpx.HTTPError as e:
            logger.error(f"Failed to send critical alert: {e}")

    async def send_flow_alert(
        self,
        conversation_id: str,
        flow_id: Any,
        flow_slug: Optional[str],
        result: ExecutionResult,
    ):
        """Alert on an abnormal run, with the last executed steps for triage."""
        last_steps = [
            {"node_id": step.node_id, "node_type": step.node_type, "status": step.status.value}
            for step in result.steps[-5:]
        ]
        await self.send_critical_alert(
            f"Flow run {result.status.value}",
            {
                "conversation_id": conversation_id,
                "flow_id": flow_id,
                "flow_slug": flow_slug,
                "run_status": result.status.value,
                "final_node_id": result.final_node_id,
                "step_count": len(result.steps),
                "last_steps": last_steps,
                "error": result.error,
            },
        )

    async def cleanup(self):
        if self.client:
            await self.client.aclose()


# Globally accessible instance
alerting_service = AlertingService(settings.alerting_webhook_url)
