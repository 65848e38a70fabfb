"""Chat model access for the coach.

Text turns run on Cerebras and fail over to Groq when Cerebras times out or
answers 5xx. A 4xx from Cerebras is the caller's fault and is not retried.
Turns that carry an image go to the Groq vision model, which has no fallback.
"""

import os

import structlog
from httpx import HTTPStatusError, ReadTimeout
from langchain_cerebras import ChatCerebras
from langchain_core.messages import BaseMessage
from langchain_groq import ChatGroq

logger = structlog.get_logger(__name__)


class LLMError(Exception):
    """The provider rejected the request (4xx). Retrying will not help."""
    pass


class LLMUnavailableError(Exception):
    """No provider produced a reply."""
    pass


def _client_error_status(exc: Exception) -> int | None:
    """Status code when ``exc`` is an HTTP 4xx, else None."""
    if isinstance(exc, HTTPStatusError) and 400 <= exc.response.status_code < 500:
        return exc.response.status_code
    return None


def _has_image(messages: list[BaseMessage]) -> bool:
    return any(
        isinstance(part, dict) and part.get("type") == "image_url"
        for msg in messages
        if isinstance(msg.content, list)
        for part in msg.content
    )


def content_to_text(content) -> str:
    """Flatten a chat model's content (str or list of parts) into plain text."""
    if isinstance(content, str):
        return content
    texts = []
    for part in content or []:
        if isinstance(part, str):
            texts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            texts.append(part.get("text", ""))
    return "".join(texts)


class LLMAdapter:
    """Cerebras, Groq and Groq-vision chat models behind one ``generate`` call.

    Model names, temperature, token cap and timeout come from the environment
    (CEREBRAS_MODEL, GROQ_MODEL, GROQ_VISION_MODEL, LLM_TEMPERATURE,
    LLM_MAX_TOKENS, LLM_TIMEOUT).
    """

    def __init__(self):
        self.cerebras_key = os.environ.get("CEREBRAS_API_KEY", "")
        self.groq_key = os.environ.get("GROQ_API_KEY", "")

        self.cerebras_model_name = os.environ.get("CEREBRAS_MODEL", "gpt-oss-120b")
        self.groq_model_name = os.environ.get("GROQ_MODEL", "openai/gpt-oss-120b")
        self.vision_model_name = os.environ.get("GROQ_VISION_MODEL", "meta-llama/llama-4-scout-17b-16e-instruct")

        self.timeout = int(os.environ.get("LLM_TIMEOUT", "60"))
        settings = {
            "temperature": float(os.environ.get("LLM_TEMPERATURE", "0.7")),
            "max_tokens": int(os.environ.get("LLM_MAX_TOKENS", "2048")),
            "timeout": self.timeout,
        }

        self.primary_llm = ChatCerebras(api_key=self.cerebras_key, model=self.cerebras_model_name, **settings)
        self.fallback_llm = ChatGroq(api_key=self.groq_key, model=self.groq_model_name, **settings)
        self.vision_llm = ChatGroq(api_key=self.groq_key, model=self.vision_model_name, **settings)

    def is_healthy(self) -> bool:
        """True if at least one provider has a key configured."""
        return bool(self.cerebras_key or self.groq_key)

    def invoke_with_failover(self, messages: list[BaseMessage]) -> BaseMessage:
        """Run a text prompt on Cerebras, retrying once on Groq.

        Raises:
            LLMError: Cerebras rejected the request with a 4xx.
            LLMUnavailableError: Both providers failed.
        """
        try:
            return self.primary_llm.invoke(messages)
        except Exception as e:
            status = _client_error_status(e)
            if status is not None:
                logger.error("llm.rejected", provider="cerebras", status=status)
                raise LLMError(f"Cerebras rejected the request ({status}): {e}")
            if isinstance(e, ReadTimeout):
                logger.warning("llm.primary_timeout", timeout=self.timeout)
            else:
                logger.warning("llm.primary_failed", error=str(e))

        logger.info("llm.groq_fallback", model=self.groq_model_name)
        try:
            return self.fallback_llm.invoke(messages)
        except Exception as e:
            logger.error("llm.all_providers_failed", error=str(e))
            raise LLMUnavailableError(f"Cerebras and Groq both failed: {e}")

    def invoke_vision(self, messages: list[BaseMessage]) -> BaseMessage:
        """Run an image-bearing prompt on the Groq vision model."""
        try:
            return self.vision_llm.invoke(messages)
        except Exception as e:
            status = _client_error_status(e)
            if status is not None:
                logger.error("llm.rejected", provider="groq_vision", status=status)
                raise LLMError(f"Groq vision rejected the request ({status}): {e}")
            logger.error("llm.vision_failed", error=str(e))
            raise LLMUnavailableError(f"Vision model failed: {e}")

    def generate(self, messages: list[BaseMessage]) -> str:
        """Reply text for a prompt, routed by whether it carries an image."""
        with_image = _has_image(messages)
        logger.debug("llm.generate", vision=with_image, turns=len(messages))
        response = self.invoke_vision(messages) if with_image else self.invoke_with_failover(messages)
        return content_to_text(response.content).strip()
