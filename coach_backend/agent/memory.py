"""Client memory: facts about a member carried across conversations.

After a member's exchange is saved, the chat model is asked which parts of
it are worth remembering (goals, injuries, preferences, achievements...).
The answer is stored per user and the most important items are added to the
system prompt of later turns. Extraction is best-effort: a provider error,
an unparseable answer or a failed write is logged and the exchange stands.
"""

import json
import os
import re

import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from coach_backend.core.database import save_client_memories
from coach_backend.core.llm_adapter import LLMError, LLMUnavailableError

logger = structlog.get_logger(__name__)

MEMORY_CATEGORIES = (
    "preferences", "achievements", "concerns", "goals", "context",
    "feedback", "progress", "schedule", "equipment", "techniques",
)

EXTRACTION_PROMPT = f"""Analyze the conversation below and extract information worth remembering for future coaching sessions.

Categories: {", ".join(MEMORY_CATEGORIES)}.

Rules:
- Only extract user-specific information that will help future coaching. No generic fitness advice.
- Importance is 1-10: 10 critical (injuries, medical limits), 5 moderately important, 1 minor.
- Context says briefly when or how the information came up.
- If nothing is worth remembering, return an empty list.

Answer with JSON only, in this shape:
{{"memories": [{{"information": "...", "category": "...", "importance": 8, "context": "..."}}]}}"""

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class MemoryItem(BaseModel):
    information: str = Field(min_length=1)
    category: str = "context"
    importance: int = Field(ge=1, le=10)
    context: str = ""


class MemoryExtraction(BaseModel):
    memories: list[MemoryItem] = Field(default_factory=list)


def memory_extraction_enabled() -> bool:
    return os.environ.get("MEMORY_EXTRACTION", "true").strip().lower() in ("true", "1", "yes", "on")


def parse_memories(raw: str) -> list[MemoryItem]:
    """Parse the model's JSON answer.

    Raises:
        ValueError: The answer is not JSON or does not match the expected shape.
    """
    payload = json.loads(_FENCE.sub("", raw.strip()))
    if isinstance(payload, list):
        payload = {"memories": payload}
    items = MemoryExtraction.model_validate(payload).memories
    for item in items:
        if item.category not in MEMORY_CATEGORIES:
            item.category = "context"
    return items


def extract_memories(llm_adapter, user_message: str, reply: str) -> list[MemoryItem]:
    """Ask the chat model what to remember from one exchange.

    Returns an empty list when the model fails or answers with something
    that cannot be parsed.
    """
    messages = [
        SystemMessage(content=EXTRACTION_PROMPT),
        HumanMessage(content=f'User Message: "{user_message}"\nAI Response: "{reply}"'),
    ]
    try:
        raw = llm_adapter.generate(messages)
    except (LLMError, LLMUnavailableError) as e:
        logger.warning("memory.extraction_failed", error=str(e))
        return []

    try:
        return parse_memories(raw)
    except (ValueError, PydanticValidationError) as e:
        logger.warning("memory.unparseable", error=str(e)[:200])
        return []


def remember_exchange(llm_adapter, user_id: str, user_message: str, reply: str) -> int:
    """Extract and store memories from a member's exchange.

    Returns:
        Number of memories stored.
    """
    if not memory_extraction_enabled() or not user_message.strip():
        return 0

    memories = extract_memories(llm_adapter, user_message, reply)
    if not memories:
        return 0

    try:
        added = save_client_memories(user_id, [m.model_dump() for m in memories])
    except SQLAlchemyError as e:
        logger.error("memory.save_failed", user_id=user_id, error=str(e))
        return 0

    logger.info("memory.saved", user_id=user_id, extracted=len(memories), added=added)
    return added
