"""Coach agent: turns a conversation context into a model reply.

Builds the LangChain message list (system prompt, recent history, the new
user turn with an optional inline image) and runs it through the LLM adapter.
"""

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from coach_backend.agent.prompts import build_system_prompt
from coach_backend.api.schemas import ImageAttachment
from coach_backend.core.context_builder import ConversationContext
from coach_backend.core.errors import ExternalServiceError
from coach_backend.core.images import to_base64, to_data_url
from coach_backend.core.llm_adapter import LLMAdapter, LLMError, LLMUnavailableError

logger = structlog.get_logger(__name__)

IMAGE_ONLY_PROMPT = "Please take a look at this image and give me your coaching feedback."


def build_messages(
    context: ConversationContext,
    text: str,
    image: ImageAttachment | None = None,
) -> list[BaseMessage]:
    """Assemble the prompt for one turn.

    Args:
        context: History and caller info for the conversation.
        text: The user's trimmed message, possibly empty when an image is attached.
        image: Optional validated image for the current turn.

    Returns:
        Messages ready for the chat model.
    """
    system_prompt = build_system_prompt(context.is_guest, context.memories)
    messages: list[BaseMessage] = [SystemMessage(content=system_prompt)]

    for turn in context.history:
        if turn.role == "user":
            messages.append(HumanMessage(content=turn.content))
        elif turn.role == "assistant":
            messages.append(AIMessage(content=turn.content))

    if image is None:
        messages.append(HumanMessage(content=text))
    else:
        messages.append(HumanMessage(content=[
            {"type": "text", "text": text or IMAGE_ONLY_PROMPT},
            {"type": "image_url", "image_url": {"url": to_data_url(to_base64(image), image.mime_type)}},
        ]))
    return messages


class CoachAgent:
    """Generates coach replies with the adapter's provider failover."""

    def __init__(self, llm_adapter: LLMAdapter):
        self.llm_adapter = llm_adapter

    def reply(
        self,
        context: ConversationContext,
        text: str,
        image: ImageAttachment | None = None,
    ) -> str:
        """Generate the assistant reply for a turn.

        Raises:
            ExternalServiceError: Providers failed or returned an empty reply.
        """
        messages = build_messages(context, text, image)
        logger.debug("coach.invoke", history=len(context.history), has_image=image is not None)

        try:
            reply = self.llm_adapter.generate(messages)
        except (LLMError, LLMUnavailableError) as e:
            raise ExternalServiceError("AI coach", str(e),
                                       context={"conversation_id": context.conversation_id})

        if not reply:
            raise ExternalServiceError("AI coach", "empty reply",
                                       context={"conversation_id": context.conversation_id})
        return reply
