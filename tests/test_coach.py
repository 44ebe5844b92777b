import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from salescoach.agent.coach import (
    FALLBACK_REPLY,
    GENERIC_FOLLOW_UPS,
    GENERIC_REPLY,
    SalesCoachService,
    format_transcript,
    parse_coach_reply,
)
from salescoach.errors import ModelError, StorageError
from salescoach.models import Message
from salescoach.services.session_store import SessionStore
from salescoach.settings import Settings


def _tagged(payload: dict) -> str:
    return f"<json>\n{json.dumps(payload)}\n</json>"


COACH_REPLY = _tagged(
    {
        "reply": "Anchor on value first. Ask what budget range they had in mind.",
        "followUps": ["What budget did you plan for?", "Who else signs off?"],
    }
)

MEMORY_REPLY = _tagged(
    {
        "customerName": "Dana",
        "company": "Acme",
        "industry": "Logistics",
        "painPoints": ["manual routing"],
        "budget": "$40k",
        "timeline": "Q3",
        "objections": ["price"],
        "nextSteps": ["send proposal"],
        "rollingSummary": "Dana from Acme is price sensitive.",
    }
)


@pytest.fixture
def coach(store: SessionStore, llm: MagicMock, test_settings: Settings) -> SalesCoachService:
    return SalesCoachService(store, llm, test_settings)


def test_format_transcript() -> None:
    messages = [Message(role="user", content="Hi"), Message(role="assistant", content="Hello")]
    assert format_transcript(messages) == "USER: Hi\nASSISTANT: Hello"


def test_parse_coach_reply_tagged_json() -> None:
    reply, follow_ups = parse_coach_reply(COACH_REPLY)
    assert reply.startswith("Anchor on value first.")
    assert follow_ups == ["What budget did you plan for?", "Who else signs off?"]


def test_parse_coach_reply_raw_text_fallback() -> None:
    """Plain prose becomes the reply; follow-ups fall back to the generic pair."""
    reply, follow_ups = parse_coach_reply("Tell them the price reflects onboarding support.")
    assert reply == "Tell them the price reflects onboarding support."
    assert follow_ups == list(GENERIC_FOLLOW_UPS)


def test_parse_coach_reply_wrong_follow_up_count() -> None:
    reply, follow_ups = parse_coach_reply(_tagged({"reply": "Sure.", "followUps": ["only one"]}))
    assert reply == "Sure."
    assert follow_ups == list(GENERIC_FOLLOW_UPS)
    _, follow_ups = parse_coach_reply(_tagged({"reply": "Sure.", "followUps": ["a", "b", "c"]}))
    assert follow_ups == list(GENERIC_FOLLOW_UPS)


def test_parse_coach_reply_missing_reply() -> None:
    reply, follow_ups = parse_coach_reply(_tagged({"followUps": ["a?", "b?"]}))
    assert reply == GENERIC_REPLY
    assert follow_ups == ["a?", "b?"]


def test_parse_coach_reply_broken_json_object() -> None:
    """Output that looks like JSON but does not parse gets the generic reply."""
    reply, follow_ups = parse_coach_reply('{"reply": "unterminated')
    assert reply == GENERIC_REPLY
    assert len(follow_ups) == 2


@pytest.mark.asyncio
async def test_first_turn_pricing_question(coach: SalesCoachService, llm: MagicMock, store: SessionStore) -> None:
    llm.complete.return_value = COACH_REPLY
    result = await coach.chat("s1", "What's your pricing?")

    assert result.reply
    assert len(result.follow_ups) == 2
    assert result.user_turn_count == 1
    state = await store.get_state("s1")
    assert [m.role for m in state.messages] == ["user", "assistant"]
    assert state.messages[1].content == result.reply
    llm.complete.assert_called_once()


@pytest.mark.asyncio
async def test_prompt_contains_window_summary_and_memory(
    coach: SalesCoachService, llm: MagicMock, store: SessionStore
) -> None:
    for i in range(7):
        await store.append_user_message("s1", f"old question {i}")
        await store.append_assistant_message("s1", f"old answer {i}")
    await store.merge_deal_memory("s1", {"company": "Acme", "rollingSummary": "Early talks."})
    llm.complete.return_value = COACH_REPLY

    await coach.chat("s1", "latest question")

    messages = llm.complete.call_args[0][0]
    assert messages[0]["role"] == "system"
    assert "<json>" in messages[0]["content"]
    user_prompt = messages[1]["content"]
    assert "Rolling summary: Early talks." in user_prompt
    assert '"company": "Acme"' in user_prompt
    assert "USER: latest question" in user_prompt
    # last 10 messages only: the oldest four are outside the window
    assert "old question 2" not in user_prompt
    assert "old answer 2" in user_prompt


@pytest.mark.asyncio
async def test_memory_updates_on_third_turn_only(
    coach: SalesCoachService, llm: MagicMock
) -> None:
    llm.complete.side_effect = [COACH_REPLY, COACH_REPLY, COACH_REPLY, MEMORY_REPLY]

    first = await coach.chat("s1", "Hi, I'm Dana from Acme.")
    second = await coach.chat("s1", "We route trucks by hand.")
    assert first.deal_memory.company == ""
    assert second.deal_memory.company == ""
    assert second.rolling_summary == ""

    third = await coach.chat("s1", "Budget is around $40k.")
    assert third.user_turn_count == 3
    assert third.deal_memory.company == "Acme"
    assert third.deal_memory.pain_points == ["manual routing"]
    assert third.rolling_summary == "Dana from Acme is price sensitive."
    assert llm.complete.call_count == 4


@pytest.mark.asyncio
async def test_unparseable_memory_leaves_state_unchanged(
    coach: SalesCoachService, llm: MagicMock, store: SessionStore
) -> None:
    await store.merge_deal_memory("s1", {"objections": ["too expensive"], "rollingSummary": "Prior."})
    llm.complete.side_effect = [COACH_REPLY, COACH_REPLY, COACH_REPLY, "I could not extract anything."]
    for text in ("one", "two", "three"):
        result = await coach.chat("s1", text)
    assert result.deal_memory.objections == ["too expensive"]
    assert result.rolling_summary == "Prior."
    assert result.reply.startswith("Anchor on value first.")


@pytest.mark.asyncio
async def test_memory_model_failure_does_not_fail_turn(
    coach: SalesCoachService, llm: MagicMock
) -> None:
    llm.complete.side_effect = [COACH_REPLY, COACH_REPLY, COACH_REPLY, ModelError("timeout")]
    for text in ("one", "two", "three"):
        result = await coach.chat("s1", text)
    assert result.user_turn_count == 3
    assert result.reply.startswith("Anchor on value first.")


@pytest.mark.asyncio
async def test_malformed_model_text_falls_back_to_raw_reply(
    coach: SalesCoachService, llm: MagicMock
) -> None:
    llm.complete.return_value = "Honestly, lead with ROI and ask about their timeline."
    result = await coach.chat("s1", "They say we're too expensive.")
    assert result.reply == "Honestly, lead with ROI and ask about their timeline."
    assert result.follow_ups == list(GENERIC_FOLLOW_UPS)


@pytest.mark.asyncio
async def test_model_failure_returns_fallback_with_persisted_counters(
    coach: SalesCoachService, llm: MagicMock, store: SessionStore
) -> None:
    llm.complete.return_value = COACH_REPLY
    await coach.chat("s1", "first")
    await store.merge_deal_memory("s1", {"company": "Acme", "rollingSummary": "Summary so far."})

    llm.complete.side_effect = ModelError("connection reset")
    result = await coach.chat("s1", "second")

    assert result.reply == FALLBACK_REPLY
    assert result.follow_ups == []
    assert result.deal_memory.company == "Acme"
    assert result.rolling_summary == "Summary so far."
    assert result.user_turn_count == 1
    state = await store.get_state("s1")
    assert len(state.messages) == 2


@pytest.mark.asyncio
async def test_storage_failure_propagates(llm: MagicMock, test_settings: Settings) -> None:
    broken = MagicMock(spec=SessionStore)
    broken.transaction = MagicMock(side_effect=StorageError("redis down"))
    coach = SalesCoachService(broken, llm, test_settings)
    with pytest.raises(StorageError):
        await coach.chat("s1", "hello")


@pytest.mark.asyncio
async def test_turn_count_matches_number_of_chats(coach: SalesCoachService, llm: MagicMock) -> None:
    llm.complete = AsyncMock(return_value=COACH_REPLY)
    for n in range(1, 6):
        result = await coach.chat("s1", f"message {n}")
        assert result.user_turn_count == n
        assert len(result.follow_ups) == 2
