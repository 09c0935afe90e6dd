"""Ephemeral per-conversation state.

Two interchangeable stores share one async interface (``put``, ``get``,
``delete``, ``sweep``):

* :class:`ConversationStore` keeps records in process memory and relies on
  :func:`run_sweeper` to reap idle ones. State is lost on restart and is not
  shared between server instances.
* :class:`RedisConversationStore` mirrors records to Redis with a key TTL, so
  expiry happens server-side and ``sweep`` has nothing to do.

Writes replace the whole record. Two requests racing on the same
conversation id are last-write-wins; callers merge before writing if they
need anything else.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List

from ..models import ChatMessage, ConversationState
from .redis import RedisCrudService

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

CONVERSATION_KEY_PREFIX = "conversation:"


class ConversationStore:
    """In-memory conversation map with an injected clock and TTL."""

    def __init__(self, ttl_seconds: float = 3600, clock: Clock = time.time) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._records: Dict[str, ConversationState] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._records

    async def put(
        self,
        conversation_id: str,
        history: List[ChatMessage],
        context: Dict[str, Any] | None,
    ) -> None:
        """Replace the record for conversation_id and stamp its last activity."""
        self._records[conversation_id] = ConversationState(
            history=list(history),
            context=context,
            last_activity=self._clock(),
        )

    async def get(self, conversation_id: str) -> ConversationState | None:
        return self._records.get(conversation_id)

    async def delete(self, conversation_id: str) -> None:
        self._records.pop(conversation_id, None)

    async def sweep(self, now: float | None = None) -> None:
        """Drop every record idle for longer than the TTL."""
        if now is None:
            now = self._clock()
        expired = [
            cid
            for cid, state in self._records.items()
            if now - state.last_activity > self._ttl
        ]
        for cid in expired:
            del self._records[cid]
        if expired:
            logger.info("Swept %d idle conversations (%d remain)", len(expired), len(self._records))


def _state_to_dict(state: ConversationState) -> Dict[str, Any]:
    return {
        "history": [m.to_dict() for m in state.history],
        "context": state.context,
        "last_activity": state.last_activity,
    }


def _dict_to_state(data: Dict[str, Any]) -> ConversationState:
    return ConversationState(
        history=[ChatMessage.from_dict(m) for m in data.get("history", []) if isinstance(m, dict)],
        context=data.get("context"),
        last_activity=float(data.get("last_activity", 0.0)),
    )


class RedisConversationStore:
    """Conversation records kept in Redis under ``<namespace>conversation:<id>`` with a TTL."""

    def __init__(
        self,
        redis_crud: RedisCrudService,
        ttl_seconds: int = 3600,
        namespace: str = "",
        clock: Clock = time.time,
    ) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds
        self._namespace = namespace
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def _key(self, conversation_id: str) -> str:
        return f"{self._namespace}{CONVERSATION_KEY_PREFIX}{conversation_id}"

    async def put(
        self,
        conversation_id: str,
        history: List[ChatMessage],
        context: Dict[str, Any] | None,
    ) -> None:
        state = ConversationState(history=list(history), context=context, last_activity=self._clock())
        try:
            payload = json.dumps(_state_to_dict(state))
        except (TypeError, ValueError) as e:
            logger.warning("Conversation serialization failed for %s: %s", conversation_id, e)
            return
        if not await self._redis.set(self._key(conversation_id), payload, ttl_seconds=self._ttl):
            logger.warning("Conversation %s was not mirrored to Redis", conversation_id)

    async def get(self, conversation_id: str) -> ConversationState | None:
        raw = await self._redis.get(self._key(conversation_id))
        if raw is None:
            return None
        try:
            return _dict_to_state(json.loads(raw))
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
            logger.warning("Invalid conversation data for %s: %s", conversation_id, e)
            return None

    async def delete(self, conversation_id: str) -> None:
        await self._redis.delete(self._key(conversation_id))

    async def sweep(self, now: float | None = None) -> None:
        """Redis expires keys on its own."""
        return None


async def run_sweeper(stores: List[Any], interval_seconds: float) -> None:
    """Sweep every store on a fixed interval until cancelled."""
    logger.info("Conversation sweeper running every %.0fs", interval_seconds)
    while True:
        await asyncio.sleep(interval_seconds)
        for store in stores:
            await store.sweep()
