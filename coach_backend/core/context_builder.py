"""Conversation context assembly for a coaching turn.

Loads the last HISTORY_RECENT_K messages of the conversation and the member's
important memories from the database, and trims the oldest messages when the
history exceeds the token budget.
"""

import os
from dataclasses import dataclass, field

import structlog

from coach_backend.core.database import Message, get_important_memories, get_recent_messages

logger = structlog.get_logger(__name__)

HISTORY_TOKEN_BUDGET = 3000


@dataclass
class HistoryTurn:
    """One prior message as the model will see it."""
    role: str
    content: str


@dataclass
class ConversationContext:
    """Assembled context for a coaching turn.

    Attributes:
        conversation_id: Conversation the turn belongs to, "" for a new one.
        is_guest: True when the caller has no authenticated identity.
        history: Prior turns, oldest first.
        memories: Important facts remembered about a member, "category: information".
    """
    conversation_id: str = ""
    is_guest: bool = False
    history: list[HistoryTurn] = field(default_factory=list)
    memories: list[str] = field(default_factory=list)


def _estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token."""
    return len(text) // 4


def _to_turn(msg: Message) -> HistoryTurn:
    content = msg.content
    if msg.image_base64 and msg.role == "user":
        # Earlier images are not re-sent to the model
        content = f"{content}\n[The user attached an image here]"
    return HistoryTurn(role=msg.role, content=content)


def build_context(conversation_id: str, is_guest: bool = False, user_id: str | None = None) -> ConversationContext:
    """Assemble the history and remembered facts for a turn.

    Args:
        conversation_id: Existing conversation id, or "" for a new thread.
        is_guest: Whether the caller is a guest.
        user_id: Member whose important memories are loaded, None for guests.

    Returns:
        ConversationContext with at most HISTORY_RECENT_K turns.
    """
    context = ConversationContext(conversation_id=conversation_id, is_guest=is_guest)
    if user_id:
        context.memories = [f"{m.category}: {m.information}" for m in get_important_memories(user_id)]

    if not conversation_id:
        return context

    recent_k = int(os.environ.get("HISTORY_RECENT_K", "10"))
    context.history = [_to_turn(m) for m in get_recent_messages(conversation_id, limit=recent_k)]

    total = sum(_estimate_tokens(t.content) for t in context.history)
    if total > HISTORY_TOKEN_BUDGET:
        original = len(context.history)
        while len(context.history) > 1 and total > HISTORY_TOKEN_BUDGET:
            total -= _estimate_tokens(context.history.pop(0).content)
        logger.warning("context.token_budget_exceeded", original=original,
                       kept=len(context.history))

    return context
