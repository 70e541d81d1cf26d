# /flowengine/services/session_store.py

import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol, Union

import redis.asyncio as redis
from pydantic import BaseModel, Field, ValidationError

from flowengine.config.settings import settings
from flowengine.exceptions import SessionStoreError
from flowengine.models.session import ExecutionSession, RunStatus
from flowengine.utils.circuit_breaker import CircuitBreaker
from flowengine.utils.metrics import session_store_operations

# Persistence for live-mode sessions, one record per conversation. The engine
# never talks to a store; FlowService loads a record before a run and saves
# or deletes it afterwards.

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoredSession(BaseModel):
    conversation_id: str
    flow_id: Optional[Union[int, str]] = None
    flow_slug: Optional[str] = None
    session: ExecutionSession
    status: RunStatus = RunStatus.WAITING
    abnormal: bool = False
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class SessionStore(Protocol):
    async def get(self, conversation_id: str) -> Optional[StoredSession]: ...

    async def save(self, record: StoredSession) -> None: ...

    async def delete(self, conversation_id: str) -> None: ...


class InMemorySessionStore:
    """Process-local store, for development and tests."""

    def __init__(self):
        self._records: Dict[str, StoredSession] = {}

    async def get(self, conversation_id: str) -> Optional[StoredSession]:
        return self._records.get(conversation_id)

    async def save(self, record: StoredSession) -> None:
        self._records[record.conversation_id] = record

    async def delete(self, conversation_id: str) -> None:
        self._records.pop(conversation_id, None)


class RedisSessionStore:
    KEY_PREFIX = "flow_session:"

    def __init__(self, redis_client: "redis.Redis", ttl: int = settings.session_ttl_seconds):
        self.redis = redis_client
        self.ttl = ttl
        self.circuit_breaker = CircuitBreaker("session_store")

    @classmethod
    def from_url(cls, redis_url: str, ttl: int = settings.session_ttl_seconds) -> "RedisSessionStore":
        pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
        return cls(redis.Redis(connection_pool=pool), ttl)

    def _key(self, conversation_id: str) -> str:
        return f"{self.KEY_PREFIX}{conversation_id}"

    async def get(self, conversation_id: str) -> Optional[StoredSession]:
        try:
            raw = await self.circuit_breaker.call(self.redis.get, self._key(conversation_id))
        except Exception as e:
            session_store_operations.labels(operation="get", status="error").inc()
            raise SessionStoreError(f"Could not load session for {conversation_id}: {e}") from e

        if raw is None:
            session_store_operations.labels(operation="get", status="miss").inc()
            return None
        try:
            record = StoredSession.model_validate_json(raw)
        except ValidationError as e:
            # A record we cannot read is dropped so the conversation can start over.
            logger.error(f"Discarding corrupt session record for {conversation_id}: {e}")
            session_store_operations.labels(operation="get", status="corrupt").inc()
            await self.delete(conversation_id)
            return None
        session_store_operations.labels(operation="get", status="hit").inc()
        return record

    async def save(self, record: StoredSession) -> None:
        record = record.model_copy(update={"updated_at": _utcnow()})
        try:
            await self.circuit_breaker.call(
                self.redis.setex, self._key(record.conversation_id), self.ttl, record.model_dump_json()
            )
        except Exception as e:
            session_store_operations.labels(operation="save", status="error").inc()
            raise SessionStoreError(f"Could not save session for {record.conversation_id}: {e}") from e
        session_store_operations.labels(operation="save", status="success").inc()

    async def delete(self, conversation_id: str) -> None:
        try:
            await self.circuit_breaker.call(self.redis.delete, self._key(conversation_id))
        except Exception as e:
            session_store_operations.labels(operation="delete", status="error").inc()
            raise SessionStoreError(f"Could not delete session for {conversation_id}: {e}") from e
        session_store_operations.labels(operation="delete", status="success").inc()


def create_session_store() -> SessionStore:
    if settings.redis_url:
        return RedisSessionStore.from_url(settings.redis_url)
    logger.warning("FLOW_REDIS_URL not set - sessions are kept in process memory")
    return InMemorySessionStore()
