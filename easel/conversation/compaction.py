"""LLM-powered history summarization for /compact.

Conversation.compact() does the rewrite; this module produces the summary
it is given. Kept apart from the engine so the turn loop stays focused on
orchestration.
"""

from __future__ import annotations

import logging

from easel.conversation.store import Conversation
from easel.llm.base import ChatBackend
from easel.llm.types import Message, TextPart

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_CHARS = 8000

SUMMARY_SYSTEM_PROMPT = """\
You are a conversation summarizer. Output ONLY the summary, in 2-3 concise
paragraphs. Preserve exact file paths, page names and numbers. Cover the
topics discussed, key conclusions, and where the user left off."""


def build_transcript(conversation: Conversation, max_chars: int = MAX_TRANSCRIPT_CHARS) -> str:
    """Join the text parts of every message, oldest first, capped at ``max_chars``."""
    texts = [
        part.text
        for msg in conversation.messages
        for part in msg.content
        if isinstance(part, TextPart)
    ]
    return "\n---\n".join(texts)[:max_chars]


async def summarize_conversation(backend: ChatBackend, conversation: Conversation) -> str:
    """Ask ``backend`` for a summary of ``conversation``. No tools are offered."""
    transcript = build_transcript(conversation)
    prompt = Message(
        role="user",
        content=[TextPart(f"Summarize this conversation:\n\n{transcript}")],
    )

    parts: list[str] = []
    async for event in backend.chat([prompt], [], SUMMARY_SYSTEM_PROMPT):
        if event.type == "text_delta":
            parts.append(event.text)

    summary = "".join(parts).strip()
    logger.info(
        "Summarized %d messages (%d transcript chars -> %d summary chars)",
        len(conversation),
        len(transcript),
        len(summary),
    )
    return summary
