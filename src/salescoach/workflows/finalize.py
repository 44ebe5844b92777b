import logging
from typing import Any, Dict, List

from ..agent.coach import format_transcript
from ..agent.parsing import parse_json_list
from ..errors import ModelError
from ..models import ActionItem, FinalResult
from ..services.llm import LanguageModelClient
from ..services.session_store import SessionStore
from ..settings import Settings
from .runner import WorkflowStep

logger = logging.getLogger(__name__)

FINALIZE_CALL = "finalize-call"


class FinalizeCallWorkflow:
    """Post-call processing: summary bullets, action items, follow-up email.

    Runs over the full transcript. Each step degrades to an empty value on
    failure so later steps still run; the result is written to the session
    as the last step.
    """

    name = FINALIZE_CALL

    def __init__(
        self,
        store: SessionStore,
        llm: LanguageModelClient,
        settings: Settings,
    ) -> None:
        self._store = store
        self._llm = llm
        self._settings = settings

    async def _ask(self, prompt: str) -> str:
        return await self._llm.complete([{"role": "user", "content": prompt}])

    async def summarize(self, transcript: str) -> List[str]:
        prompt = self._settings.summary_prompt.format(
            max_bullets=self._settings.max_summary_bullets,
            transcript=transcript,
        )
        try:
            raw = await self._ask(prompt)
        except ModelError as e:
            logger.error("Summary step failed: %s", e)
            return []
        bullets = parse_json_list(raw, "summaryBullets")
        if bullets is None:
            logger.warning("Failed to parse summary bullets")
            return []
        cleaned = [b.strip() for b in bullets if isinstance(b, str) and b.strip()]
        return cleaned[: self._settings.max_summary_bullets]

    async def action_items(self, summary_bullets: List[str]) -> List[Dict[str, str]]:
        prompt = self._settings.action_items_prompt.format(
            summary="\n".join(f"- {b}" for b in summary_bullets),
        )
        try:
            raw = await self._ask(prompt)
        except ModelError as e:
            logger.error("Action items step failed: %s", e)
            return []
        items = parse_json_list(raw, "actionItems")
        if items is None:
            logger.warning("Failed to parse action items")
            return []
        return [
            a.to_dict() for a in (ActionItem.from_dict(i) for i in items) if a is not None
        ]

    async def followup_email(
        self, summary_bullets: List[str], action_items: List[Dict[str, str]]
    ) -> str:
        prompt = self._settings.followup_email_prompt.format(
            summary=" ".join(summary_bullets),
            next_steps="; ".join(f"{a['owner']}: {a['item']}" for a in action_items),
        )
        try:
            return (await self._ask(prompt)).strip()
        except ModelError as e:
            logger.error("Follow-up email step failed: %s", e)
            return ""

    async def run(self, payload: Dict[str, Any], step: WorkflowStep) -> Dict[str, Any]:
        session_id = payload.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("Missing sessionId in workflow payload")

        state = await self._store.get_state(session_id)
        transcript = format_transcript(state.messages)
        logger.info(
            "Finalizing session %s (%d messages)", session_id, len(state.messages)
        )

        bullets = await step.do("summary", lambda: self.summarize(transcript))
        items = await step.do("action-items", lambda: self.action_items(bullets))
        email = await step.do("followup-email", lambda: self.followup_email(bullets, items))

        final = FinalResult(
            summary_bullets=bullets[: self._settings.max_summary_bullets],
            action_items=[a for a in (ActionItem.from_dict(i) for i in items) if a is not None],
            followup_email=email,
        )

        async def save_final() -> bool:
            await self._store.set_final(session_id, final)
            return True

        await step.do("save-final", save_final)
        return {"ok": True, "sessionId": session_id}
