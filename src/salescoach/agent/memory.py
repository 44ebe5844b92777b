import json
import logging
from typing import Any, Dict

from ..errors import ModelError
from ..models import AgentState
from ..services.llm import LanguageModelClient
from ..settings import Settings
from .parsing import parse_json_object

logger = logging.getLogger(__name__)


def should_update_memory(user_turn_count: int, every: int) -> bool:
    """Memory is refreshed on turn counts that are positive multiples of ``every``."""
    return every > 0 and user_turn_count > 0 and user_turn_count % every == 0


class MemoryExtractor:
    """Re-summarizes the conversation into deal memory plus a rolling summary."""

    def __init__(self, llm: LanguageModelClient, settings: Settings) -> None:
        self._llm = llm
        self._settings = settings

    async def extract(self, state: AgentState, transcript: str) -> Dict[str, Any] | None:
        """Ask the model for an updated deal memory. Returns the parsed object or None."""
        user_prompt = self._settings.memory_user_prompt.format(
            deal_memory=json.dumps(state.deal_memory.to_dict()),
            rolling_summary=state.rolling_summary,
            transcript=transcript,
        )
        try:
            raw = await self._llm.complete(
                [
                    {"role": "system", "content": self._settings.memory_system_prompt},
                    {"role": "user", "content": user_prompt},
                ]
            )
        except ModelError as e:
            logger.warning("Memory extraction request failed: %s", e)
            return None

        parsed = parse_json_object(raw)
        if parsed is None:
            logger.warning("Memory extraction returned no parseable JSON; keeping prior memory")
        return parsed

    async def update(self, state: AgentState, transcript: str) -> bool:
        """Merge a fresh extraction into ``state`` in place. Returns True if anything was merged."""
        parsed = await self.extract(state, transcript)
        if parsed is None:
            return False
        state.apply_extraction(parsed)
        logger.info("Deal memory updated at turn %d", state.user_turn_count)
        return True
