"""Coaching agent: chat turns, deal-memory extraction and model-output parsing."""

from .coach import ChatResult, SalesCoachService, format_transcript, parse_coach_reply
from .memory import MemoryExtractor, should_update_memory

__all__ = [
    "ChatResult",
    "MemoryExtractor",
    "SalesCoachService",
    "format_transcript",
    "parse_coach_reply",
    "should_update_memory",
]
