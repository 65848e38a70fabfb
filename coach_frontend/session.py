"""Client-side chat session state.

ChatSession owns everything one browser tab knows about the chat: the
transcript, the active conversation id, the guest allowance and the plan
status. Sends are optimistic: the user entry is appended as ``pending``,
confirmed when the server answers and removed again on any failure.
"""

import base64
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import uuid4

import structlog

from coach_frontend import toasts
from coach_frontend.api_client import (
    MESSAGE_LIMIT_REACHED,
    UNKNOWN,
    ApiError,
    ChatApiClient,
    ImageUpload,
)
from coach_frontend.toasts import Toast, toast_for_error

logger = structlog.get_logger(__name__)

PENDING = "pending"
CONFIRMED = "confirmed"

GUEST_MESSAGE_LIMIT = 4


class ConversationNotReadyError(Exception):
    """A send was attempted while the previous one has not been confirmed."""
    pass


class ConversationMismatchError(Exception):
    """The server answered with a different conversation id than the one bound."""
    pass


@dataclass
class TranscriptEntry:
    role: str
    content: str
    status: str = CONFIRMED
    id: int | None = None
    image_data: str | None = None
    image_mime_type: str | None = None
    local_id: str = field(default_factory=lambda: uuid4().hex)

    @classmethod
    def from_api(cls, msg: dict) -> "TranscriptEntry":
        return cls(
            role=msg["role"],
            content=msg["content"],
            status=CONFIRMED,
            id=msg.get("id"),
            image_data=msg.get("imageData"),
            image_mime_type=msg.get("imageMimeType"),
        )


class ChatSession:
    """State machine behind the chat page.

    Attributes:
        client: API client; its token decides guest vs. member.
        transcript: Entries of the active conversation, oldest first.
        conversation_id: Server id of the active conversation, None until the
            first successful send binds it.
        conversations: Sidebar list from the last load_conversations().
        guest_messages_sent: Successful sends made as a guest.
        plan: Last plan status fetched for a member, or None.
        limit_reached: Set by MESSAGE_LIMIT_REACHED, cleared by refresh_plan().
        sending: True while a send is in flight.
    """

    def __init__(self, client: ChatApiClient, notifier: Callable[[Toast], None] | None = None):
        self.client = client
        self.notify = notifier or (lambda toast: None)
        self.transcript: list[TranscriptEntry] = []
        self.conversation_id: str | None = None
        self.conversations: list[dict] = []
        self.guest_messages_sent = 0
        self.plan: dict | None = None
        self.limit_reached = False
        self.sending = False

    @property
    def is_guest(self) -> bool:
        return not self.client.is_authenticated

    @property
    def guest_messages_remaining(self) -> int:
        return max(GUEST_MESSAGE_LIMIT - self.guest_messages_sent, 0)

    def _bind_conversation(self, conversation_id: str) -> None:
        if not conversation_id:
            raise ConversationMismatchError("Server returned no conversation id")
        if self.conversation_id is None:
            self.conversation_id = conversation_id
            logger.info("session.conversation_bound", conversation_id=conversation_id)
        elif self.conversation_id != conversation_id:
            raise ConversationMismatchError(
                f"Expected conversation {self.conversation_id}, got {conversation_id}"
            )

    def _ensure_ready(self) -> None:
        if self.sending or any(e.status == PENDING for e in self.transcript):
            raise ConversationNotReadyError("A message is still being sent")
        if self.transcript and self.conversation_id is None:
            raise ConversationNotReadyError("Chat not fully initialized")

    def send(self, text: str, image: ImageUpload | None = None) -> TranscriptEntry | None:
        """Send a message and return the assistant entry, or None if nothing was added.

        Raises:
            ConversationNotReadyError: A previous send is still unconfirmed.
            ConversationMismatchError: The server switched conversations mid-thread.
        """
        text = (text or "").strip()
        if not text and image is None:
            return None

        self._ensure_ready()

        if self.is_guest and self.guest_messages_sent >= GUEST_MESSAGE_LIMIT:
            logger.info("session.guest_limit_blocked", sent=self.guest_messages_sent)
            self.notify(toasts.guest_limit())
            return None
        if self.limit_reached:
            self.notify(toasts.upgrade_prompt())
            return None

        before = len(self.transcript)
        pending = TranscriptEntry(
            role="user",
            content=text or "[1 Image]",
            status=PENDING,
            image_data=base64.b64encode(image.data).decode("ascii") if image else None,
            image_mime_type=image.mime_type if image else None,
        )
        self.transcript.append(pending)
        self.sending = True

        try:
            data = self.client.send_chat(
                text,
                conversation_id=self.conversation_id or "",
                is_guest=self.is_guest,
                image=image,
            )
            conversation_id = data["conversationId"]
            user_msg = data["userMessage"]
            assistant_msg = data["assistantMessage"]
        except ApiError as e:
            del self.transcript[before:]
            if e.kind == MESSAGE_LIMIT_REACHED:
                self.limit_reached = True
                logger.info("session.message_limit_reached")
            else:
                logger.warning("session.send_failed", kind=e.kind, status=e.status)
            self.notify(toast_for_error(e, "send message"))
            return None
        except (KeyError, TypeError) as e:
            del self.transcript[before:]
            logger.error("session.malformed_response", error=str(e))
            self.notify(toast_for_error(
                ApiError(UNKNOWN, "The server sent an incomplete response."), "send message"
            ))
            return None
        finally:
            self.sending = False

        try:
            self._bind_conversation(conversation_id)
        except ConversationMismatchError:
            del self.transcript[before:]
            raise

        pending.status = CONFIRMED
        pending.id = user_msg.get("id")
        pending.content = user_msg.get("content", pending.content)
        assistant = TranscriptEntry.from_api(assistant_msg)
        self.transcript.append(assistant)

        if self.is_guest:
            self.guest_messages_sent += 1
        elif self.plan and self.plan.get("messagesRemaining") is not None:
            self.plan["messagesUsedToday"] = self.plan.get("messagesUsedToday", 0) + 1
            self.plan["messagesRemaining"] = max(self.plan["messagesRemaining"] - 1, 0)
            self.plan["canSendMessage"] = self.plan["messagesRemaining"] > 0

        return assistant

    def new_chat(self) -> None:
        """Start an empty thread; the next send creates a new conversation."""
        self._ensure_not_sending()
        self.conversation_id = None
        self.transcript = []

    def load_conversations(self) -> list[dict]:
        """Refresh the sidebar list. Guests have no stored conversations."""
        if self.is_guest:
            self.conversations = []
            return self.conversations
        try:
            self.conversations = self.client.list_conversations()
        except ApiError as e:
            self.notify(toast_for_error(e, "load conversations"))
        return self.conversations

    def open_conversation(self, conversation_id: str) -> bool:
        """Make a stored conversation active and load its transcript."""
        self._ensure_not_sending()
        try:
            conversation = self.client.get_conversation_messages(conversation_id)
        except ApiError as e:
            self.notify(toast_for_error(e, "load chat session"))
            self.conversation_id = None
            self.transcript = []
            return False

        self.conversation_id = conversation["id"]
        self.transcript = [TranscriptEntry.from_api(m) for m in conversation.get("messages", [])]
        logger.info("session.conversation_opened", conversation_id=self.conversation_id,
                    messages=len(self.transcript))
        return True

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation; deleting the active one clears the chat."""
        self._ensure_not_sending()
        try:
            self.client.delete_conversation(conversation_id)
        except ApiError as e:
            self.notify(toast_for_error(e, "delete conversation"))
            return False

        self.conversations = [c for c in self.conversations if c.get("id") != conversation_id]
        if conversation_id == self.conversation_id:
            self.conversation_id = None
            self.transcript = []
        self.notify(toasts.success("Conversation deleted"))
        return True

    def refresh_plan(self) -> dict | None:
        """Fetch the plan status; lifts the send block once the quota allows it."""
        if self.is_guest:
            return None
        try:
            self.plan = self.client.get_plan()
        except ApiError as e:
            self.notify(toast_for_error(e, "load your plan"))
            return self.plan
        was_blocked = self.limit_reached
        self.limit_reached = not self.plan.get("canSendMessage", True)
        if was_blocked and not self.limit_reached:
            self.notify(toasts.info("You can send messages again"))
        return self.plan

    def _ensure_not_sending(self) -> None:
        if self.sending:
            raise ConversationNotReadyError("A message is still being sent")
