# /flowengine/services/webhook_service.py

import logging
from typing import Optional, Union

import httpx
import tenacity

from flowengine.config.settings import settings
from flowengine.engine.integrations import IntegrationFailure, WebhookRequest, WebhookResponse
from flowengine.utils.metrics import integration_calls_counter

# HTTP adapter for webhook nodes. Any HTTP status comes back as a
# WebhookResponse (flows branch on it); transport problems come back as an
# IntegrationFailure. Nothing raises out of __call__.

logger = logging.getLogger(__name__)


class WebhookService:
    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self.http_client = http_client or httpx.AsyncClient(follow_redirects=True)

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type(httpx.ConnectError),
        stop=tenacity.stop_after_attempt(settings.webhook_retry_attempts),
        wait=tenacity.wait_exponential(multiplier=0.5, min=0.5, max=2),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _send(self, request: WebhookRequest) -> httpx.Response:
        kwargs = {"headers": request.headers, "timeout": httpx.Timeout(request.timeout_ms / 1000)}
        if isinstance(request.body, (dict, list)):
            kwargs["json"] = request.body
        elif request.body is not None:
            kwargs["content"] = str(request.body)
        return await self.http_client.request(request.method, request.url, **kwargs)

    @staticmethod
    def _decode_body(response: httpx.Response):
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                return response.json()
            except ValueError:
                logger.warning(f"Webhook declared JSON but sent invalid JSON ({response.url})")
        return response.text

    async def __call__(self, request: WebhookRequest) -> Union[WebhookResponse, IntegrationFailure]:
        try:
            response = await self._send(request)
        except httpx.TimeoutException:
            integration_calls_counter.labels(integration="webhook", status="timeout").inc()
            logger.warning(f"Webhook {request.method} {request.url} timed out after {request.timeout_ms}ms")
            return IntegrationFailure(kind="timeout", message=f"Timed out after {request.timeout_ms}ms")
        except httpx.HTTPError as e:
            integration_calls_counter.labels(integration="webhook", status="transport_error").inc()
            logger.warning(f"Webhook {request.method} {request.url} failed: {e}")
            return IntegrationFailure(kind="transport", message=str(e) or e.__class__.__name__)
        except Exception as e:
            integration_calls_counter.labels(integration="webhook", status="error").inc()
            logger.error(f"Unexpected webhook error for {request.url}: {e}", exc_info=True)
            return IntegrationFailure(kind="error", message=str(e) or e.__class__.__name__)

        status = "success" if response.is_success else "http_error"
        integration_calls_counter.labels(integration="webhook", status=status).inc()
        return WebhookResponse(status=response.status_code, body=self._decode_body(response))

    async def cleanup(self):
        await self.http_client.aclose()


# Globally accessible instance
webhook_service = WebhookService()
