# /flowengine/engine/integrations.py

"""
Contracts between the Driver and the outside world.

The engine builds request values and hands them to caller-supplied adapters;
adapters answer with a result value (the model or its plain mapping form,
e.g. `{"status": 200, "body": ...}`) or an IntegrationFailure. An adapter
that raises, hangs or answers with anything else is treated the same as one
that returns a failure.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union
from pydantic import BaseModel, Field


class WebhookRequest(BaseModel):
    url: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout_ms: int


class WebhookResponse(BaseModel):
    status: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class CompletionRequest(BaseModel):
    system_prompt: str
    user_prompt: str
    model: str
    temperature: float
    max_tokens: int


class CompletionResult(BaseModel):
    text: str
    provider: Optional[str] = None


class IntegrationFailure(BaseModel):
    """
    Structured failure of a webhook/AI call. Stored into the node's target
    variable so downstream condition/message nodes can branch on it.

    kind: timeout | http_error | transport | unavailable | invalid_request | empty_response | error
    """
    kind: str
    message: str

    def as_marker(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.message, "kind": self.kind}


class WebhookAdapter(Protocol):
    async def __call__(self, request: WebhookRequest) -> Union[WebhookResponse, IntegrationFailure]: ...


class CompletionAdapter(Protocol):
    async def __call__(self, request: CompletionRequest) -> Union[CompletionResult, IntegrationFailure]: ...


class ActionDispatch(Protocol):
    async def __call__(self, action: str, payload: Dict[str, Any], variables: Dict[str, Any]) -> None: ...


@dataclass
class Integrations:
    """
    Everything a Driver invocation may reach outside itself. Any member left
    as None is simply skipped (webhook/AI nodes then store an `unavailable`
    failure marker).
    """
    webhook: Optional[WebhookAdapter] = None
    completion: Optional[CompletionAdapter] = None
    dispatch_action: Optional[ActionDispatch] = None
    sleep: Optional[Callable[[float], Awaitable[None]]] = None
    on_event: Optional[Callable[[Dict[str, Any]], Any]] = None
