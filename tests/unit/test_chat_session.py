"""Unit tests for the client-side chat session state machine."""

import pytest

from coach_frontend.api_client import MESSAGE_LIMIT_REACHED, NETWORK, ApiError, ImageUpload
from coach_frontend.session import (
    CONFIRMED,
    GUEST_MESSAGE_LIMIT,
    PENDING,
    ChatSession,
    ConversationMismatchError,
    ConversationNotReadyError,
    TranscriptEntry,
)


def _reply(conversation_id: str = "conv-1", n: int = 1, text: str = "Coach reply") -> dict:
    return {
        "conversationId": conversation_id,
        "content": text,
        "userMessage": {"id": n * 2 - 1, "role": "user", "content": "sent",
                        "createdAt": "2026-01-01T00:00:00Z"},
        "assistantMessage": {"id": n * 2, "role": "assistant", "content": text,
                             "createdAt": "2026-01-01T00:00:00Z"},
    }


class FakeClient:
    """Scripted replacement for ChatApiClient."""

    def __init__(self, token: str | None = "tok"):
        self.token = token
        self.responses: list = []
        self.sent: list[dict] = []
        self.conversations: list[dict] = []
        self.deleted: list[str] = []
        self.plan = {"plan": "FREE", "dailyLimit": 10, "messagesUsedToday": 0,
                     "messagesRemaining": 10, "canSendMessage": True}
        self.error: ApiError | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    def send_chat(self, message, conversation_id="", is_guest=False, image=None):
        self.sent.append({"message": message, "conversation_id": conversation_id,
                          "is_guest": is_guest, "image": image})
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def list_conversations(self):
        if self.error:
            raise self.error
        return list(self.conversations)

    def get_conversation_messages(self, conversation_id):
        if self.error:
            raise self.error
        return {"id": conversation_id, "title": "Leg day", "messages": [
            {"id": 1, "role": "user", "content": "hi", "createdAt": "2026-01-01T00:00:00Z"},
            {"id": 2, "role": "assistant", "content": "hello", "createdAt": "2026-01-01T00:00:00Z"},
        ]}

    def delete_conversation(self, conversation_id):
        if self.error:
            raise self.error
        self.deleted.append(conversation_id)
        return True

    def get_plan(self):
        if self.error:
            raise self.error
        return dict(self.plan)


@pytest.fixture
def toasts():
    return []


@pytest.fixture
def member(toasts):
    return ChatSession(FakeClient(token="tok"), notifier=toasts.append)


@pytest.fixture
def guest(toasts):
    return ChatSession(FakeClient(token=None), notifier=toasts.append)


class TestSendSuccess:

    def test_first_send_binds_conversation(self, member):
        member.client.responses.append(_reply("conv-1"))
        assistant = member.send("How do I deadlift?")

        assert member.conversation_id == "conv-1"
        assert assistant.content == "Coach reply"
        assert [e.status for e in member.transcript] == [CONFIRMED, CONFIRMED]
        assert member.transcript[0].id == 1
        assert member.client.sent[0]["conversation_id"] == ""

    def test_second_send_reuses_conversation(self, member):
        member.client.responses += [_reply("conv-1", 1), _reply("conv-1", 2)]
        member.send("first")
        member.send("second")

        assert member.client.sent[1]["conversation_id"] == "conv-1"
        assert len(member.transcript) == 4

    def test_text_is_trimmed(self, member):
        member.client.responses.append(_reply())
        member.send("  squat form?  ")
        assert member.client.sent[0]["message"] == "squat form?"

    def test_image_only_send(self, member):
        member.client.responses.append(_reply())
        image = ImageUpload("meal.png", b"\x89PNG", "image/png")
        assert member.send("", image=image) is not None
        assert member.client.sent[0]["image"] is image

    def test_sent_image_stays_in_transcript(self, member):
        member.client.responses.append(_reply())
        member.send("rate my lunch", image=ImageUpload("meal.png", b"\x89PNG", "image/png"))

        user_entry = member.transcript[0]
        assert user_entry.status == CONFIRMED
        assert user_entry.image_data == "iVBORw=="
        assert user_entry.image_mime_type == "image/png"

    def test_member_plan_counter_updated(self, member):
        member.refresh_plan()
        member.client.responses.append(_reply())
        member.send("hi")
        assert member.plan["messagesUsedToday"] == 1
        assert member.plan["messagesRemaining"] == 9

    def test_server_switching_conversation_rejected(self, member):
        member.client.responses += [_reply("conv-1", 1), _reply("conv-2", 2)]
        member.send("first")

        with pytest.raises(ConversationMismatchError):
            member.send("second")
        assert member.conversation_id == "conv-1"
        assert len(member.transcript) == 2


class TestEmptyMessage:

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    def test_member_empty_not_sent(self, member, text):
        assert member.send(text) is None
        assert member.client.sent == []
        assert member.transcript == []

    @pytest.mark.parametrize("text", ["", "   "])
    def test_guest_empty_not_sent(self, guest, text):
        assert guest.send(text) is None
        assert guest.client.sent == []
        assert guest.guest_messages_sent == 0


class TestMessageLimit:

    def test_no_assistant_entry_and_no_counter_change(self, member, toasts):
        member.refresh_plan()
        plan_before = dict(member.plan)
        member.client.responses.append(
            ApiError(MESSAGE_LIMIT_REACHED, "Daily limit reached", status=429)
        )

        assert member.send("one more") is None
        assert member.transcript == []
        assert member.plan == plan_before
        assert member.limit_reached
        assert toasts[-1].title == "Daily limit reached"

    def test_guest_counter_unchanged(self, guest):
        guest.client.responses.append(ApiError(MESSAGE_LIMIT_REACHED, "limit", status=429))
        guest.send("hi")
        assert guest.guest_messages_sent == 0

    def test_blocked_until_plan_refreshed(self, member, toasts):
        member.client.responses.append(ApiError(MESSAGE_LIMIT_REACHED, "limit", status=429))
        member.send("hi")

        assert member.send("again") is None
        assert len(member.client.sent) == 1

        member.refresh_plan()
        assert not member.limit_reached
        assert toasts[-1].category == "info"
        member.client.responses.append(_reply())
        assert member.send("again") is not None


class TestFailureRollback:

    @pytest.mark.parametrize("error", [
        ApiError("VALIDATION", "bad", status=400),
        ApiError("EXTERNAL_SERVICE", "down", status=503),
        ApiError(NETWORK, "offline"),
        ApiError("NOT_FOUND", "gone", status=404),
    ])
    def test_pending_entry_removed(self, member, toasts, error):
        member.client.responses.append(_reply("conv-1"))
        member.send("first")
        before = len(member.transcript)

        member.client.responses.append(error)
        assert member.send("second") is None

        assert len(member.transcript) == before
        assert all(e.status == CONFIRMED for e in member.transcript)
        assert toasts[-1].category == "error"
        assert not member.sending

    def test_malformed_response_rolled_back(self, member):
        member.client.responses.append({"content": "no ids"})
        assert member.send("hi") is None
        assert member.transcript == []
        assert member.conversation_id is None

    def test_failed_first_send_leaves_no_conversation(self, member):
        member.client.responses.append(ApiError(NETWORK, "offline"))
        member.send("hi")
        assert member.conversation_id is None
        assert member.transcript == []


class TestGuestLimit:

    def test_fifth_send_blocked_preflight(self, guest, toasts):
        for n in range(1, GUEST_MESSAGE_LIMIT + 1):
            guest.client.responses.append(_reply("conv-g", n))
            assert guest.send(f"msg {n}") is not None

        assert guest.guest_messages_sent == 4
        assert guest.send("msg 5") is None
        assert len(guest.client.sent) == 4
        assert toasts[-1].title == "Guest limit reached"

    def test_failures_do_not_count(self, guest):
        guest.client.responses.append(ApiError(NETWORK, "offline"))
        guest.send("hi")
        assert guest.guest_messages_sent == 0
        assert guest.guest_messages_remaining == 4

    def test_guest_flag_sent(self, guest):
        guest.client.responses.append(_reply())
        guest.send("hi")
        assert guest.client.sent[0]["is_guest"] is True


class TestConcurrency:

    def test_send_while_in_flight_rejected(self, member):
        member.sending = True
        with pytest.raises(ConversationNotReadyError):
            member.send("hi")

    def test_send_with_unconfirmed_entry_rejected(self, member):
        member.transcript.append(TranscriptEntry(role="user", content="waiting", status=PENDING))
        with pytest.raises(ConversationNotReadyError):
            member.send("hi")

    def test_transcript_without_conversation_rejected(self, member):
        member.transcript.append(TranscriptEntry(role="user", content="orphan"))
        with pytest.raises(ConversationNotReadyError):
            member.send("hi")


class TestConversationNavigation:

    def test_delete_active_conversation_clears_chat(self, member):
        member.client.responses.append(_reply("conv-1"))
        member.send("hi")
        member.conversations = [{"id": "conv-1"}, {"id": "conv-2"}]

        assert member.delete_conversation("conv-1")
        assert member.conversation_id is None
        assert member.transcript == []
        assert member.conversations == [{"id": "conv-2"}]

    def test_delete_other_conversation_keeps_chat(self, member):
        member.client.responses.append(_reply("conv-1"))
        member.send("hi")

        member.delete_conversation("conv-2")
        assert member.conversation_id == "conv-1"
        assert len(member.transcript) == 2

    def test_delete_failure_keeps_state(self, member, toasts):
        member.client.responses.append(_reply("conv-1"))
        member.send("hi")
        member.client.error = ApiError("NOT_FOUND", "gone", status=404)

        assert not member.delete_conversation("conv-1")
        assert member.conversation_id == "conv-1"
        assert toasts[-1].title == "Not found"

    def test_new_chat_resets(self, member):
        member.client.responses += [_reply("conv-1", 1), _reply("conv-2", 1)]
        member.send("hi")
        member.new_chat()
        assert member.conversation_id is None
        assert member.transcript == []

        member.send("fresh start")
        assert member.client.sent[1]["conversation_id"] == ""
        assert member.conversation_id == "conv-2"

    def test_open_conversation_loads_transcript(self, member):
        assert member.open_conversation("conv-9")
        assert member.conversation_id == "conv-9"
        assert [e.content for e in member.transcript] == ["hi", "hello"]

    def test_open_failure_clears_active(self, member):
        member.client.responses.append(_reply("conv-1"))
        member.send("hi")
        member.client.error = ApiError("NOT_FOUND", "gone", status=404)

        assert not member.open_conversation("conv-x")
        assert member.conversation_id is None
        assert member.transcript == []

    def test_guest_has_no_stored_conversations(self, guest):
        guest.client.conversations = [{"id": "c"}]
        assert guest.load_conversations() == []

    def test_load_conversations(self, member):
        member.client.conversations = [{"id": "c1"}]
        assert member.load_conversations() == [{"id": "c1"}]
