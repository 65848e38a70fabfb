"""Pydantic models for the API layer.

Defines request/response schemas for all endpoints. The wire format is
camelCase; Python attributes stay snake_case via aliases.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

MAX_MESSAGE_LENGTH = 2000


class ApiModel(BaseModel):
    """Base for wire models: camelCase aliases, populate by either name."""
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class ChatRequest(ApiModel):
    """JSON body of POST /api/chat.

    Emptiness and length are checked by the route so both the JSON and the
    multipart variants report the same VALIDATION error.
    """
    message: str = ""
    conversation_id: str = Field("", alias="conversationId")
    is_guest: bool = Field(False, alias="isGuest")


class ImageAttachment(BaseModel):
    """Validated image carried by a multipart chat request."""
    data: bytes
    mime_type: str
    filename: str | None = None


class MessageOut(ApiModel):
    """Single persisted message."""
    id: int
    role: Literal["user", "assistant"]
    content: str
    created_at: datetime = Field(alias="createdAt")
    image_data: str | None = Field(None, alias="imageData")
    image_mime_type: str | None = Field(None, alias="imageMimeType")


class ChatResponse(ApiModel):
    """Successful reply to POST /api/chat."""
    conversation_id: str = Field(alias="conversationId")
    content: str
    user_message: MessageOut = Field(alias="userMessage")
    assistant_message: MessageOut = Field(alias="assistantMessage")


class ConversationSummary(ApiModel):
    """Conversation entry for the sidebar list."""
    id: str
    title: str
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
    last_message: str | None = Field(None, alias="lastMessage")
    message_count: int = Field(0, alias="messageCount")


class ConversationListResponse(ApiModel):
    conversations: list[ConversationSummary]


class ConversationDetail(ApiModel):
    id: str
    title: str
    messages: list[MessageOut]


class ConversationMessagesResponse(ApiModel):
    conversation: ConversationDetail


class DeleteResponse(ApiModel):
    success: bool = True


class PlanStatus(ApiModel):
    """Plan and daily quota for the current user. Limits are None when unlimited."""
    plan: Literal["FREE", "PRO"]
    daily_limit: int | None = Field(None, alias="dailyLimit")
    messages_used_today: int = Field(0, alias="messagesUsedToday")
    messages_remaining: int | None = Field(None, alias="messagesRemaining")
    can_send_message: bool = Field(True, alias="canSendMessage")


class KnowledgeItemOut(ApiModel):
    id: int
    title: str
    file_name: str = Field(alias="fileName")
    mime_type: str = Field(alias="mimeType")
    file_size: int = Field(alias="fileSize")
    status: str
    created_at: datetime = Field(alias="createdAt")


class SkippedFile(ApiModel):
    name: str
    reason: str


class KnowledgeUploadResponse(ApiModel):
    message: str
    knowledge_items: list[KnowledgeItemOut] = Field(alias="knowledgeItems")
    skipped_files: list[SkippedFile] = Field(default_factory=list, alias="skippedFiles")


class KnowledgeListResponse(ApiModel):
    knowledge_items: list[KnowledgeItemOut] = Field(alias="knowledgeItems")


class ErrorResponse(ApiModel):
    """Uniform error body: machine code, human message, error category."""
    error: str
    message: str
    type: str
    detail: str | None = None
