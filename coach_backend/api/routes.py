"""FastAPI endpoints for the FitCoach API.

POST /api/chat - send a message (JSON or multipart with an image)
GET /api/conversations - list the caller's conversations
GET /api/conversations/{id}/messages - full message history
DELETE /api/conversations/{id} - delete a conversation and its messages
GET /api/user/plan - plan and daily quota
POST /api/knowledge/upload, GET /api/knowledge, GET /api/knowledge/{id}/download
GET /health - component health check
"""

import json
import os
import re
import time
import uuid
from pathlib import Path

import structlog
from fastapi import APIRouter, Depends, File, Query, Request, UploadFile
from fastapi.responses import FileResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile as StarletteUploadFile

from coach_backend.agent.coach import CoachAgent
from coach_backend.agent.memory import remember_exchange
from coach_backend.api.deps import CurrentUser, get_current_user, get_optional_user
from coach_backend.api.schemas import (
    MAX_MESSAGE_LENGTH,
    ChatRequest,
    ChatResponse,
    ConversationDetail,
    ConversationListResponse,
    ConversationMessagesResponse,
    ConversationSummary,
    DeleteResponse,
    ErrorResponse,
    ImageAttachment,
    KnowledgeItemOut,
    KnowledgeListResponse,
    KnowledgeUploadResponse,
    MessageOut,
    PlanStatus,
    SkippedFile,
)
from coach_backend.core.context_builder import build_context
from coach_backend.core.database import (
    ExchangeResult,
    KnowledgeItem,
    Message,
    delete_conversation,
    find_conversation,
    get_conversation_messages,
    get_knowledge_item,
    get_session,
    list_conversations,
    list_knowledge_items,
    save_exchange,
    save_knowledge_item,
)
from coach_backend.core.errors import (
    AuthenticationError,
    FileUploadError,
    NotFoundError,
    ValidationError,
)
from coach_backend.core.guardrails import INJECTION_REFUSAL, InputGuard, OutputGuard
from coach_backend.core.images import to_base64, validate_image
from coach_backend.core.quota import get_plan_status, release_message, reserve_message

logger = structlog.get_logger(__name__)

router = APIRouter()
_input_guard = InputGuard()
_output_guard = OutputGuard()

_ERROR_RESPONSES = {status: {"model": ErrorResponse} for status in (400, 401, 404, 429, 503)}

KNOWLEDGE_ALLOWED_TYPES = (
    "application/pdf",
    "text/plain",
    "text/markdown",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)


# Chat

def _is_truthy(value) -> bool:
    return str(value or "").strip().lower() in ("true", "1", "yes", "on")


async def _parse_chat_request(request: Request) -> tuple[ChatRequest, ImageAttachment | None]:
    """Read a chat request from either a JSON or a multipart body."""
    content_type = request.headers.get("content-type", "")
    image = None

    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        payload = {
            "message": form.get("message") or "",
            "conversationId": form.get("conversationId") or "",
            "isGuest": _is_truthy(form.get("isGuest")),
        }
        upload = form.get("image")
        if isinstance(upload, StarletteUploadFile) and upload.filename:
            data = await upload.read()
            image = validate_image(data, upload.content_type, upload.filename)
    else:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Request body must be valid JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")

    try:
        chat_request = ChatRequest.model_validate(payload)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationError(first.get("msg", "invalid value"), field=field or None)

    return chat_request, image


def _message_out(msg: Message, include_image: bool = False) -> MessageOut:
    return MessageOut(
        id=msg.id,
        role=msg.role,
        content=msg.content,
        created_at=msg.created_at,
        image_data=msg.image_base64 if include_image else None,
        image_mime_type=msg.image_mime_type,
    )


def _answer_and_save(
    agent: CoachAgent,
    text: str,
    conversation_id: str,
    image: ImageAttachment | None,
    owner_id: str | None,
) -> tuple[str, ExchangeResult, bool]:
    """History -> guardrail -> generate -> persist. Returns (reply, exchange, answered)."""
    context = build_context(conversation_id, is_guest=owner_id is None, user_id=owner_id)

    guard_result = _input_guard.check(text)
    answered = not text or guard_result.passed
    if answered:
        reply = agent.reply(context, text, image)
    else:
        reply = INJECTION_REFUSAL
        logger.info("chat.guardrail_refusal", reason=guard_result.reason)

    reply, _ = _output_guard.check(reply)

    try:
        exchange = save_exchange(
            conversation_id or None,
            owner_id,
            text,
            reply,
            image_base64=to_base64(image) if image else None,
            image_mime_type=image.mime_type if image else None,
        )
    except LookupError:
        # Deleted between the lookup and the write
        raise NotFoundError("Conversation", context={"conversation_id": conversation_id})
    return reply, exchange, answered


def _process_chat(
    agent: CoachAgent,
    chat_request: ChatRequest,
    image: ImageAttachment | None,
    user: CurrentUser | None,
) -> ChatResponse:
    """Reserve quota -> answer and persist -> remember. A failed turn gives its slot back."""
    text = chat_request.message.strip()
    conversation_id = chat_request.conversation_id.strip()
    owner_id = user.id if user else None

    if conversation_id and find_conversation(conversation_id, owner_id) is None:
        raise NotFoundError("Conversation", context={"conversation_id": conversation_id})

    if user is None:
        reply, exchange, _ = _answer_and_save(agent, text, conversation_id, image, None)
    else:
        reserve_message(user.id)
        try:
            reply, exchange, answered = _answer_and_save(agent, text, conversation_id, image, user.id)
        except Exception:
            release_message(user.id)
            raise
        if answered:
            remember_exchange(agent.llm_adapter, user.id, text, reply)

    logger.info("chat.persisted", conversation_id=exchange.conversation_id,
                created=exchange.created_conversation, guest=user is None)

    return ChatResponse(
        conversation_id=exchange.conversation_id,
        content=reply,
        user_message=_message_out(exchange.user_message),
        assistant_message=_message_out(exchange.assistant_message),
    )


@router.post("/api/chat", response_model=ChatResponse, responses=_ERROR_RESPONSES)
async def chat(req: Request, user: CurrentUser | None = Depends(get_optional_user)):
    """Process a user message: validate -> identify -> generate -> persist -> respond."""
    start = time.monotonic()
    chat_request, image = await _parse_chat_request(req)

    if not chat_request.message.strip() and image is None:
        raise ValidationError("A message or an image is required")
    if len(chat_request.message) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message must be at most {MAX_MESSAGE_LENGTH} characters")

    if user is None and not chat_request.is_guest:
        raise AuthenticationError("Missing bearer token for a non-guest request")

    logger.info("chat.request", conversation_id=chat_request.conversation_id or None,
                msg_len=len(chat_request.message), has_image=image is not None,
                guest=user is None)

    agent = CoachAgent(req.app.state.llm_adapter)
    response = await run_in_threadpool(_process_chat, agent, chat_request, image, user)

    logger.info("chat.response", conversation_id=response.conversation_id,
                latency_ms=int((time.monotonic() - start) * 1000))
    return response


# Conversations

@router.get("/api/conversations", response_model=ConversationListResponse)
def conversations(user: CurrentUser = Depends(get_current_user)):
    """List the caller's conversations, most recent first."""
    rows = list_conversations(user.id)
    return ConversationListResponse(conversations=[
        ConversationSummary(
            id=c.id,
            title=c.title,
            created_at=c.created_at,
            updated_at=c.updated_at,
            last_message=c.last_message,
            message_count=c.message_count,
        )
        for c in rows
    ])


@router.get("/api/conversations/{conversation_id}/messages", response_model=ConversationMessagesResponse)
def conversation_messages(conversation_id: str, user: CurrentUser | None = Depends(get_optional_user)):
    """Fetch the full chronological history of one conversation."""
    conv = find_conversation(conversation_id, user.id if user else None)
    if conv is None:
        raise NotFoundError("Conversation", context={"conversation_id": conversation_id})
    messages = get_conversation_messages(conversation_id)
    return ConversationMessagesResponse(conversation=ConversationDetail(
        id=conv.id,
        title=conv.title,
        messages=[_message_out(m, include_image=True) for m in messages],
    ))


@router.delete("/api/conversations/{conversation_id}", response_model=DeleteResponse)
def remove_conversation(conversation_id: str, user: CurrentUser = Depends(get_current_user)):
    """Delete a conversation together with its messages."""
    if not delete_conversation(conversation_id, user.id):
        raise NotFoundError("Conversation", context={"conversation_id": conversation_id})
    return DeleteResponse(success=True)


# Plan

@router.get("/api/user/plan", response_model=PlanStatus)
def user_plan(user: CurrentUser = Depends(get_current_user)):
    return get_plan_status(user.id)


# Knowledge files

def _user_upload_dir(user_id: str) -> Path:
    safe_id = re.sub(r"[^A-Za-z0-9_.-]", "_", user_id)
    return Path(os.environ.get("UPLOAD_DIR", "data/uploads")) / safe_id


def _knowledge_out(item: KnowledgeItem) -> KnowledgeItemOut:
    return KnowledgeItemOut(
        id=item.id,
        title=item.title,
        file_name=item.file_name,
        mime_type=item.mime_type,
        file_size=item.file_size,
        status=item.status,
        created_at=item.created_at,
    )


@router.post("/api/knowledge/upload", response_model=KnowledgeUploadResponse)
def upload_knowledge(
    files: list[UploadFile] = File(...),
    user: CurrentUser = Depends(get_current_user),
):
    """Store uploaded knowledge files, skipping the ones that fail validation."""
    max_bytes = int(os.environ.get("KNOWLEDGE_MAX_FILE_MB", "10")) * 1024 * 1024
    target_dir = _user_upload_dir(user.id)
    target_dir.mkdir(parents=True, exist_ok=True)

    saved: list[KnowledgeItemOut] = []
    skipped: list[SkippedFile] = []

    for upload in files:
        name = upload.filename or "unnamed"
        data = upload.file.read()

        if not data:
            skipped.append(SkippedFile(name=name, reason="Empty file"))
            continue
        if len(data) > max_bytes:
            skipped.append(SkippedFile(name=name, reason=f"File exceeds {max_bytes // (1024 * 1024)}MB limit"))
            continue
        if upload.content_type not in KNOWLEDGE_ALLOWED_TYPES:
            skipped.append(SkippedFile(name=name, reason=f"Unsupported file type: {upload.content_type}"))
            continue

        stored_name = f"{uuid.uuid4().hex}{Path(name).suffix}"
        stored_path = target_dir / stored_name
        with open(stored_path, "wb") as f:
            f.write(data)

        try:
            item = save_knowledge_item(user.id, name, stored_name, upload.content_type, len(data))
        except SQLAlchemyError:
            stored_path.unlink(missing_ok=True)
            logger.error("knowledge.save_failed", user_id=user.id, file_name=name)
            raise
        saved.append(_knowledge_out(item))

    if skipped:
        logger.warning("knowledge.files_skipped", user_id=user.id,
                       skipped=[s.name for s in skipped])

    if not saved:
        reason = skipped[0].reason if skipped else "No files provided"
        raise FileUploadError(f"No files were uploaded successfully: {reason}",
                              context={"user_id": user.id, "skipped": len(skipped)})

    logger.info("knowledge.uploaded", user_id=user.id, count=len(saved))
    return KnowledgeUploadResponse(
        message=f"Successfully uploaded {len(saved)} file{'s' if len(saved) > 1 else ''}",
        knowledge_items=saved,
        skipped_files=skipped,
    )


@router.get("/api/knowledge", response_model=KnowledgeListResponse)
def knowledge(user: CurrentUser = Depends(get_current_user)):
    return KnowledgeListResponse(knowledge_items=[_knowledge_out(i) for i in list_knowledge_items(user.id)])


@router.get("/api/knowledge/{item_id}/download")
def download_knowledge(
    item_id: int,
    inline: bool = Query(False),
    user: CurrentUser = Depends(get_current_user),
):
    """Stream a stored knowledge file, inline for in-browser preview."""
    item = get_knowledge_item(item_id, user.id)
    if item is None:
        raise NotFoundError("File", context={"item_id": item_id})

    path = _user_upload_dir(user.id) / item.stored_name
    if not path.exists():
        logger.error("knowledge.file_missing", item_id=item_id, path=str(path))
        raise NotFoundError("File", context={"item_id": item_id})

    return FileResponse(
        path=path,
        media_type=item.mime_type,
        filename=item.file_name,
        content_disposition_type="inline" if inline else "attachment",
    )


# Health

@router.get("/health")
def health(req: Request):
    """Check health of all backend components."""
    components = {}

    llm = req.app.state.llm_adapter
    components["cerebras"] = "ok" if llm.cerebras_key else "error"
    components["groq"] = "ok" if llm.groq_key else "error"

    try:
        with get_session():
            components["database"] = "ok"
    except RuntimeError:
        components["database"] = "error"

    errors = [k for k, v in components.items() if v == "error"]
    if not errors:
        status = "healthy"
    elif len(errors) == len(components):
        status = "unhealthy"
    else:
        status = "degraded"

    return {"status": status, "components": components}


@router.get("/")
@router.head("/")
def root_health():
    """Basic root health check for deployment platforms."""
    return {"status": "ok", "service": "fitcoach-api"}
