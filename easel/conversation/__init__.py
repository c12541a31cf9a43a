"""Conversation history, the turn engine and compaction."""

from easel.conversation.compaction import build_transcript, summarize_conversation
from easel.conversation.engine import ConversationEngine, ToolCallRecord, TurnResult
from easel.conversation.store import ContextBreakdown, Conversation

__all__ = [
    "ContextBreakdown",
    "Conversation",
    "ConversationEngine",
    "ToolCallRecord",
    "TurnResult",
    "build_transcript",
    "summarize_conversation",
]
