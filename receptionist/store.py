"""Context store: durable per-call JSON documents.

The store is a plain key-value layer: one JSON document per ``call_id``.
Backends raise ``ContextStoreError``; the turn processor decides whether a
failure is fatal (it never is for a save).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from receptionist.errors import ContextStoreError
from receptionist.models import ConversationContext, TenantContext
from receptionist.privacy import redact_pii

log = logging.getLogger("receptionist.store")


class ContextStore(ABC):
    """Load/save conversation contexts keyed by call id."""

    @abstractmethod
    async def load(self, call_id: str) -> Optional[ConversationContext]:
        """Return the persisted context, or None if the call is new."""

    @abstractmethod
    async def save(self, context: ConversationContext) -> None:
        """Persist the context, replacing any previous version."""

    async def load_or_create(
        self, call_id: str, caller_id: str, tenant: TenantContext,
    ) -> ConversationContext:
        context = await self.load(call_id)
        if context is not None:
            return context
        log.info("New call %s from %s", call_id, redact_pii(caller_id))
        return ConversationContext(call_id=call_id, caller_id=caller_id, tenant_info=tenant)


def _decode(call_id: str, raw: str | bytes) -> ConversationContext:
    try:
        return ConversationContext.from_json(raw)
    except ValidationError as exc:
        raise ContextStoreError(f"Corrupt context for call {call_id}: {exc}") from exc


class InMemoryContextStore(ContextStore):
    """Keeps serialized documents in a dict; one process only."""

    def __init__(self) -> None:
        self._docs: dict[str, str] = {}

    async def load(self, call_id: str) -> Optional[ConversationContext]:
        raw = self._docs.get(call_id)
        return _decode(call_id, raw) if raw is not None else None

    async def save(self, context: ConversationContext) -> None:
        self._docs[context.call_id] = context.to_json()

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._docs


class RedisContextStore(ContextStore):
    """Stores each context as a JSON string with a TTL."""

    def __init__(
        self,
        redis: Redis,
        ttl_seconds: int = 86400,
        key_prefix: str = "receptionist:call:",
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 86400) -> "RedisContextStore":
        return cls(Redis.from_url(url, decode_responses=True), ttl_seconds=ttl_seconds)

    def _key(self, call_id: str) -> str:
        return f"{self._prefix}{call_id}"

    async def load(self, call_id: str) -> Optional[ConversationContext]:
        try:
            raw = await self._redis.get(self._key(call_id))
        except RedisError as exc:
            raise ContextStoreError(f"Redis load failed for call {call_id}: {exc}") from exc
        return _decode(call_id, raw) if raw is not None else None

    async def save(self, context: ConversationContext) -> None:
        try:
            await self._redis.set(self._key(context.call_id), context.to_json(), ex=self._ttl)
        except RedisError as exc:
            raise ContextStoreError(
                f"Redis save failed for call {context.call_id}: {exc}"
            ) from exc

    async def close(self) -> None:
        await self._redis.aclose()
