# /flowengine/services/ai_service.py

import asyncio
import logging
from typing import Optional, Union

from google import genai
from google.genai.types import GenerateContentConfig, HttpOptions
from openai import AsyncOpenAI

from flowengine.config.settings import settings
from flowengine.engine.integrations import CompletionRequest, CompletionResult, IntegrationFailure
from flowengine.exceptions import CircuitOpenError
from flowengine.utils.circuit_breaker import CircuitBreaker
from flowengine.utils.metrics import integration_calls_counter

# Completion adapter for ai_response nodes. OpenAI is tried first, Gemini is
# the fallback; each provider sits behind its own circuit breaker.

logger = logging.getLogger(__name__)

GEMINI_FALLBACK_MODEL = "gemini-1.5-flash"


class AIService:
    def __init__(self, openai_api_key: Optional[str], gemini_api_key: Optional[str]):
        self.openai_client = AsyncOpenAI(api_key=openai_api_key) if openai_api_key else None
        if gemini_api_key:
            self.gemini_client = genai.Client(api_key=gemini_api_key, http_options=HttpOptions(api_version="v1"))
        else:
            self.gemini_client = None
        self.openai_breaker = CircuitBreaker("openai")
        self.gemini_breaker = CircuitBreaker("gemini")

        if not self.openai_client and not self.gemini_client:
            logger.warning("No AI provider configured - ai_response nodes will fail softly")

    async def _generate_openai(self, request: CompletionRequest) -> str:
        response = await self.openai_client.chat.completions.create(
            model=request.model,
            messages=[
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            timeout=settings.ai_timeout_seconds,
        )
        return (response.choices[0].message.content or "").strip()

    async def _generate_gemini(self, request: CompletionRequest) -> str:
        model = request.model if request.model.startswith("gemini") else GEMINI_FALLBACK_MODEL
        response = await asyncio.wait_for(
            asyncio.to_thread(
                self.gemini_client.models.generate_content,
                model=model,
                contents=request.user_prompt,
                config=GenerateContentConfig(
                    system_instruction=request.system_prompt,
                    temperature=request.temperature,
                    max_output_tokens=request.max_tokens,
                ),
            ),
            timeout=settings.ai_timeout_seconds,
        )
        return (response.text or "").strip()

    async def __call__(self, request: CompletionRequest) -> Union[CompletionResult, IntegrationFailure]:
        """Generate a completion with failover. Failures are returned, never raised."""
        if not self.openai_client and not self.gemini_client:
            return IntegrationFailure(kind="unavailable", message="No AI provider configured")

        last_failure = IntegrationFailure(kind="error", message="No AI provider produced a response")

        providers = (
            ("openai", self.openai_client, self.openai_breaker, self._generate_openai),
            ("gemini", self.gemini_client, self.gemini_breaker, self._generate_gemini),
        )
        for name, client, breaker, generate in providers:
            if client is None:
                continue
            try:
                text = await breaker.call(generate, request)
            except CircuitOpenError as e:
                last_failure = IntegrationFailure(kind="unavailable", message=str(e))
                continue
            except asyncio.TimeoutError:
                logger.error(f"{name} completion timed out")
                integration_calls_counter.labels(integration=f"ai_{name}", status="timeout").inc()
                last_failure = IntegrationFailure(kind="timeout", message=f"{name} timed out")
                continue
            except Exception as e:
                logger.error(f"{name} completion failed: {e}")
                integration_calls_counter.labels(integration=f"ai_{name}", status="error").inc()
                kind = "timeout" if "timeout" in e.__class__.__name__.lower() else "error"
                last_failure = IntegrationFailure(kind=kind, message=f"{name}: {e}")
                continue

            if text:
                integration_calls_counter.labels(integration=f"ai_{name}", status="success").inc()
                return CompletionResult(text=text, provider=name)
            last_failure = IntegrationFailure(kind="empty_response", message=f"{name} returned no text")

        return last_failure


# Globally accessible instance
ai_service = AIService(settings.openai_api_key, settings.gemini_api_key)
