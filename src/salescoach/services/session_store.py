import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping

from redis.asyncio.lock import Lock

from ..errors import StorageError
from ..models import AgentState, FinalResult, Message
from ..settings import Settings, get_settings
from .redis import RedisCrudService, get_redis_crud_service_async

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"
LOCK_KEY_PREFIX = "session-lock:"

# Model calls a chat turn can make while holding the lock: coach reply, memory update.
MODEL_CALLS_PER_TURN = 2
LOCK_MARGIN_SECONDS = 30.0


def session_lock_timeout(settings: Settings) -> float:
    """Lock expiry long enough for a chat turn whose model calls all run to their timeout."""
    attempts = max(settings.llm_max_retries, 0) + 1
    turn_budget = (
        MODEL_CALLS_PER_TURN * attempts * settings.llm_request_timeout_seconds
        + LOCK_MARGIN_SECONDS
    )
    return max(settings.session_lock_timeout_seconds, turn_budget)


class SessionStore:
    """Durable per-session agent state in Redis.

    Every read-modify-write runs under a Redis lock keyed by session id, so
    concurrent requests for one session are applied one at a time.
    """

    def __init__(
        self,
        redis_crud: RedisCrudService,
        ttl_seconds: int = 0,
        lock_timeout_seconds: float = 180.0,
        lock_wait_seconds: float = 60.0,
    ) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds
        self._lock_timeout = lock_timeout_seconds
        self._lock_wait = lock_wait_seconds

    def _key(self, session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    def _lock_key(self, session_id: str) -> str:
        return f"{LOCK_KEY_PREFIX}{session_id}"

    async def _load(self, session_id: str) -> AgentState:
        raw = await self._redis.get(self._key(session_id))
        if raw is None:
            return AgentState()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Invalid session data for %s, starting fresh: %s", session_id, e)
            return AgentState()
        return AgentState.from_dict(data)

    async def _ensure_held(self, lock: Lock, session_id: str) -> None:
        if not await self._redis.owns(lock):
            logger.error("Session lock for %s expired before write, discarding changes", session_id)
            raise StorageError(f"lock for session {session_id} expired before write")

    async def _save(self, session_id: str, state: AgentState) -> None:
        await self._redis.set(
            self._key(session_id),
            json.dumps(state.to_dict()),
            ttl_seconds=self._ttl or None,
        )

    @asynccontextmanager
    async def transaction(self, session_id: str) -> AsyncIterator[AgentState]:
        """Lock the session, yield its state, and persist it if the block exits cleanly.

        Raises:
            StorageError: the lock expired while the block ran; nothing is written.
        """
        async with self._redis.lock(
            self._lock_key(session_id),
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_wait,
        ) as lock:
            state = await self._load(session_id)
            yield state
            await self._ensure_held(lock, session_id)
            await self._save(session_id, state)

    async def get_state(self, session_id: str) -> AgentState:
        """Return the current state; a session that was never written reads as defaults."""
        return await self._load(session_id)

    async def append_user_message(self, session_id: str, text: str) -> AgentState:
        async with self.transaction(session_id) as state:
            state.messages.append(Message(role="user", content=text))
            state.user_turn_count += 1
        return state

    async def append_assistant_message(self, session_id: str, text: str) -> AgentState:
        async with self.transaction(session_id) as state:
            state.messages.append(Message(role="assistant", content=text))
        return state

    async def merge_deal_memory(
        self, session_id: str, partial: Mapping[str, Any]
    ) -> AgentState:
        """Merge extracted fields into the session's deal memory."""
        async with self.transaction(session_id) as state:
            state.apply_extraction(partial)
        return state

    async def set_final(self, session_id: str, final: FinalResult) -> AgentState:
        async with self.transaction(session_id) as state:
            state.final = final
        logger.info(
            "Final result saved for session %s (%d bullets, %d action items)",
            session_id,
            len(final.summary_bullets),
            len(final.action_items),
        )
        return state

    async def reset(self, session_id: str) -> None:
        """Delete everything stored for the session."""
        async with self._redis.lock(
            self._lock_key(session_id),
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_wait,
        ) as lock:
            await self._ensure_held(lock, session_id)
            await self._redis.delete(self._key(session_id))
        logger.info("Session %s reset", session_id)


# Lazy singleton, connected on first use
_session_store_instance: SessionStore | None = None


async def get_session_store_async() -> SessionStore:
    """Return the session store backed by the shared Redis connection. Cached."""
    global _session_store_instance
    if _session_store_instance is None:
        settings = get_settings()
        _session_store_instance = SessionStore(
            redis_crud=await get_redis_crud_service_async(),
            ttl_seconds=settings.session_ttl_seconds,
            lock_timeout_seconds=session_lock_timeout(settings),
            lock_wait_seconds=settings.session_lock_wait_seconds,
        )
    return _session_store_instance


def clear_session_store() -> None:
    """Forget the cached store (the Redis connection is closed separately)."""
    global _session_store_instance
    _session_store_instance = None
