"""Guardrails around the coach model.

InputGuard screens a user's message before it is sent to the model and
OutputGuard cleans the model's reply before it is stored. A blocked input is
answered with INJECTION_REFUSAL, a leaking output is replaced by
LEAKAGE_REFUSAL.
"""

import base64
import binascii
import re
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass

import structlog

from coach_backend.api.schemas import MAX_MESSAGE_LENGTH

logger = structlog.get_logger(__name__)

INJECTION_REFUSAL = (
    "I'm your fitness coach, so I can only help with training, nutrition and recovery. "
    "Could you rephrase your question?"
)
LEAKAGE_REFUSAL = (
    "I'm unable to share that information. Ask me anything about your training, "
    "nutrition or recovery."
)

MAX_OUTPUT_LENGTH = 12_000


@dataclass
class GuardrailResult:
    passed: bool
    reason: str = ""


def _any_of(*phrases: str) -> re.Pattern:
    return re.compile("|".join(f"(?:{p})" for p in phrases), re.IGNORECASE)


_INJECTION = _any_of(
    r"ignore\s+(all\s+)?(the\s+)?(previous|prior|above)\s+(instructions?|rules)",
    r"disregard\s+(all\s+)?(safety|previous|prior|your)",
    r"forget\s+(that\s+)?you\s+are\s+(a\s+)?(fitness\s+)?coach",
    r"you\s+are\s+now\s+(in\s+)?(developer|god|unrestricted)\s+mode",
    r"(system|admin)\s+override",
    r"new\s+system\s+(prompt|instructions?)\s*:",
    r"(reveal|print|show)\s+(me\s+)?(your\s+)?(system\s+)?prompt",
    r"repeat\s+(the\s+)?(text|instructions?)\s+(above|before)",
    r"what\s+(are|were)\s+your\s+(exact\s+|original\s+)?instructions",
    r"pretend\s+you\s+(are|have)\s+no\s+(restrictions?|rules?|limits?)",
    r"bypass\s+(all\s+)?(safety|filters?|restrictions?|rules?)",
    r"do\s+anything\s+now|DAN\s+mode|jailbreak",
)

# Scrambled-middle spellings of these words count as injection attempts
_SCRAMBLE_TARGETS = ("ignore", "bypass", "override", "reveal", "jailbreak", "prompt")

_ENCODED_KEYWORDS = ("ignore", "system", "prompt", "override", "bypass")
_BASE64_RUN = re.compile(r"[A-Za-z0-9+/]{20,}={0,2}")

_LEAKAGE = _any_of(
    r"you\s+are\s+coach\s+max",
    r"SYSTEM_INSTRUCTIONS?:",
    r"my\s+(system\s+)?instructions?\s+(are|say|tell)",
    r"never\s+reveal,\s+repeat,\s+summarize",
    r"do\s+not\s+adopt\s+alternative\s+personas",
    r"you\s+are\s+not\s+a\s+doctor\.\s+for\s+pain,\s+injuries",
)

# Two or more distinct prompt headings in one reply count as leakage
_PROMPT_HEADING = re.compile(
    r"^\s*##\s*(Coaching Rules|Safety|Client Context)\b", re.IGNORECASE | re.MULTILINE
)

_REDACTIONS = (
    ("EMAIL", re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    ("CARD", re.compile(r"\b(?:\d{4}[\s-]?){3}\d{4}\b")),
    ("PHONE", re.compile(r"\b\d{3}[-.]\d{3}[-.]\d{4}\b")),
    ("SECRET", re.compile(r"(?:api[_-]?key|secret|token|password)\s*[:=]\s*\S+", re.IGNORECASE)),
)

# Zero-width and bidi marks used to split trigger words
_INVISIBLE = re.compile(r"[\u200b-\u200f\u2060-\u2064\ufeff]")


def _is_scrambled(word: str, target: str) -> bool:
    if word == target or len(word) != len(target) or len(word) < 4:
        return False
    return (word[0], word[-1]) == (target[0], target[-1]) and Counter(word[1:-1]) == Counter(target[1:-1])


def _decoded_runs(text: str) -> Iterator[str]:
    for match in _BASE64_RUN.finditer(text):
        try:
            raw = base64.b64decode(match.group())
        except (binascii.Error, ValueError):
            continue
        yield raw.decode("utf-8", errors="ignore").lower()


class InputGuard:
    """Screens user messages before they reach the model."""

    def check(self, text: str) -> GuardrailResult:
        if len(text) > MAX_MESSAGE_LENGTH:
            return GuardrailResult(False, "Message too long")

        visible = _INVISIBLE.sub("", text)

        match = _INJECTION.search(visible)
        if match:
            logger.warning("guardrail.input_blocked", reason="injection_pattern", match=match.group()[:40])
            return GuardrailResult(False, "prompt_injection_detected")

        words = set(re.findall(r"\w+", visible.lower()))
        hit = next((w for w in words for t in _SCRAMBLE_TARGETS if _is_scrambled(w, t)), None)
        if hit:
            logger.warning("guardrail.input_blocked", reason="scrambled_keyword", word=hit)
            return GuardrailResult(False, "prompt_injection_detected")

        if any(kw in decoded for decoded in _decoded_runs(visible) for kw in _ENCODED_KEYWORDS):
            logger.warning("guardrail.input_blocked", reason="base64_injection")
            return GuardrailResult(False, "encoded_injection_detected")

        return GuardrailResult(True)


class OutputGuard:
    """Cleans model replies before they are persisted and returned."""

    def check(self, text: str) -> tuple[str, GuardrailResult]:
        """Returns the text to store and the check result."""
        if not text:
            return text, GuardrailResult(True)

        headings = {h.lower() for h in _PROMPT_HEADING.findall(text)}
        if _LEAKAGE.search(text) or len(headings) >= 2:
            logger.warning("guardrail.output_blocked", reason="prompt_leakage")
            return LEAKAGE_REFUSAL, GuardrailResult(False, "system_prompt_leakage")

        cleaned = text
        redacted = []
        for label, pattern in _REDACTIONS:
            cleaned, count = pattern.subn(f"[{label}_REDACTED]", cleaned)
            if count:
                redacted.append(label)
        if redacted:
            logger.warning("guardrail.output_scrubbed", kinds=redacted)

        if len(cleaned) > MAX_OUTPUT_LENGTH:
            logger.warning("guardrail.output_truncated", original_len=len(text))
            cleaned = cleaned[:MAX_OUTPUT_LENGTH] + "\n\n[Response truncated]"

        return cleaned, GuardrailResult(True)
