import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple

from ..errors import StorageError
from ..models import AgentState, DealMemory, Message
from ..services.llm import LanguageModelClient
from ..services.session_store import SessionStore
from ..settings import Settings
from .memory import MemoryExtractor, should_update_memory
from .parsing import parse_json_object

logger = logging.getLogger(__name__)

GENERIC_REPLY = "I can help. Can you tell me what price point you were expecting?"
GENERIC_FOLLOW_UPS = (
    "What's driving that concern?",
    "What would make this a clear yes for you?",
)
FALLBACK_REPLY = "I'm having trouble connecting. Could you repeat that?"


def format_transcript(messages: Iterable[Message]) -> str:
    """Render messages as ``ROLE: content`` lines."""
    return "\n".join(f"{m.role.upper()}: {m.content}" for m in messages)


def parse_coach_reply(raw: str) -> Tuple[str, List[str]]:
    """Turn raw model output into (reply, exactly two follow-up questions).

    Output that holds no JSON and does not look like JSON is taken verbatim as
    the reply.
    """
    parsed = parse_json_object(raw)
    if parsed is None and not raw.strip().startswith("{"):
        parsed = {"reply": raw.strip(), "followUps": []}
    parsed = parsed or {}

    reply = parsed.get("reply")
    if not isinstance(reply, str) or not reply.strip():
        reply = GENERIC_REPLY

    follow_ups = parsed.get("followUps")
    if not (
        isinstance(follow_ups, list)
        and len(follow_ups) == 2
        and all(isinstance(q, str) and q.strip() for q in follow_ups)
    ):
        follow_ups = list(GENERIC_FOLLOW_UPS)

    return reply.strip(), [q.strip() for q in follow_ups]


@dataclass
class ChatResult:
    reply: str
    follow_ups: List[str] = field(default_factory=list)
    deal_memory: DealMemory = field(default_factory=DealMemory)
    rolling_summary: str = ""
    user_turn_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reply": self.reply,
            "followUps": list(self.follow_ups),
            "dealMemory": self.deal_memory.to_dict(),
            "rollingSummary": self.rolling_summary,
            "userTurnCount": self.user_turn_count,
        }


class SalesCoachService:
    """Handles one chat turn: prompt the coach model, refresh deal memory, persist."""

    def __init__(
        self,
        store: SessionStore,
        llm: LanguageModelClient,
        settings: Settings,
    ) -> None:
        self._store = store
        self._llm = llm
        self._settings = settings
        self._memory = MemoryExtractor(llm, settings)

    def _build_messages(self, state: AgentState, transcript: str) -> List[Dict[str, str]]:
        user_prompt = self._settings.coach_user_prompt.format(
            rolling_summary=state.rolling_summary or "(none yet)",
            deal_memory=json.dumps(state.deal_memory.to_dict()),
            transcript=transcript,
        )
        return [
            {"role": "system", "content": self._settings.coach_system_prompt},
            {"role": "user", "content": user_prompt},
        ]

    async def chat(self, session_id: str, message: str) -> ChatResult:
        """Process one user message for the session and return the coach's answer.

        Model and parsing failures never escape: the caller gets an apologetic
        reply together with the persisted deal memory and counters. Storage
        failures propagate.
        """
        logger.info("Chat turn start session_id=%s", session_id)
        try:
            async with self._store.transaction(session_id) as state:
                state.messages.append(Message(role="user", content=message))
                state.user_turn_count += 1

                recent = state.messages[-self._settings.recent_messages_window:]
                transcript = format_transcript(recent)

                raw = await self._llm.complete(self._build_messages(state, transcript))
                reply, follow_ups = parse_coach_reply(raw)

                if should_update_memory(state.user_turn_count, self._settings.memory_update_every):
                    await self._memory.update(state, transcript)

                state.messages.append(Message(role="assistant", content=reply))
        except StorageError:
            raise
        except Exception as e:
            logger.exception("Chat turn failed for session %s: %s", session_id, e)
            return await self._fallback(session_id)

        logger.info(
            "Chat turn done session_id=%s turn=%d", session_id, state.user_turn_count
        )
        return ChatResult(
            reply=reply,
            follow_ups=follow_ups,
            deal_memory=state.deal_memory,
            rolling_summary=state.rolling_summary,
            user_turn_count=state.user_turn_count,
        )

    async def _fallback(self, session_id: str) -> ChatResult:
        state = await self._store.get_state(session_id)
        return ChatResult(
            reply=FALLBACK_REPLY,
            follow_ups=[],
            deal_memory=state.deal_memory,
            rolling_summary=state.rolling_summary,
            user_turn_count=state.user_turn_count,
        )
