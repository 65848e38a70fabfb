"""Unit tests for conversation context assembly."""

import pytest

from coach_backend.core.context_builder import (
    HISTORY_TOKEN_BUDGET,
    ConversationContext,
    _estimate_tokens,
    build_context,
)
from coach_backend.core.database import get_or_create_user, save_client_memories, save_exchange


@pytest.fixture(autouse=True)
def setup_db(db):
    yield


class TestTokenEstimation:

    def test_empty_string(self):
        assert _estimate_tokens("") == 0

    def test_four_chars_per_token(self):
        assert _estimate_tokens("a" * 400) == 100


class TestBuildContext:

    def test_new_conversation_has_no_history(self):
        context = build_context("", is_guest=True)
        assert context == ConversationContext(conversation_id="", is_guest=True, history=[])

    def test_history_is_chronological(self):
        result = save_exchange(None, None, "first", "first reply")
        save_exchange(result.conversation_id, None, "second", "second reply")

        context = build_context(result.conversation_id)
        assert [t.content for t in context.history] == ["first", "first reply", "second", "second reply"]
        assert [t.role for t in context.history] == ["user", "assistant", "user", "assistant"]

    def test_limited_to_recent_k(self, monkeypatch):
        monkeypatch.setenv("HISTORY_RECENT_K", "10")
        result = save_exchange(None, None, "m0", "r0")
        for i in range(1, 8):
            save_exchange(result.conversation_id, None, f"m{i}", f"r{i}")

        context = build_context(result.conversation_id)
        assert len(context.history) == 10
        assert context.history[-1].content == "r7"

    def test_earlier_images_marked_in_text(self):
        result = save_exchange(None, None, "my lunch", "looks balanced",
                               image_base64="aGVsbG8=", image_mime_type="image/png")
        context = build_context(result.conversation_id)
        assert "[The user attached an image here]" in context.history[0].content

    def test_token_budget_drops_oldest(self):
        big = "x" * (HISTORY_TOKEN_BUDGET * 4)
        result = save_exchange(None, None, big, "ok")
        save_exchange(result.conversation_id, None, "latest question", "latest answer")

        context = build_context(result.conversation_id)
        assert context.history[0].content != big
        assert context.history[-1].content == "latest answer"

    def test_member_memories_loaded(self):
        get_or_create_user("u1")
        save_client_memories("u1", [
            {"information": "Bad left shoulder", "category": "concerns", "importance": 9},
            {"information": "Prefers short answers", "category": "preferences", "importance": 4},
        ])
        context = build_context("", user_id="u1")
        assert context.memories == ["concerns: Bad left shoulder"]

    def test_guest_has_no_memories(self):
        get_or_create_user("u1")
        save_client_memories("u1", [{"information": "Vegan", "category": "preferences", "importance": 9}])
        assert build_context("", is_guest=True).memories == []
