"""SQLAlchemy persistence for users, conversations, messages, knowledge files and memories.

Provides the CRUD operations used by the API routes. Each function opens
its own session; the chat exchange is written in a single transaction so a
new conversation appears together with its first message pair or not at all.
"""

import os
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone

import structlog
from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    event,
    or_,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

logger = structlog.get_logger(__name__)

Base = declarative_base()

TITLE_MAX_CHARS = 50
PREVIEW_MAX_CHARS = 120


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class User(Base):
    """Local mirror of an auth-provider identity plus plan bookkeeping."""
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    plan = Column(String(8), nullable=False, default="FREE")  # "FREE" or "PRO"
    messages_used_today = Column(Integer, nullable=False, default=0)
    last_message_reset = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    conversations = relationship("Conversation", back_populates="user", cascade="all, delete-orphan")


class Conversation(Base):
    """A chat thread. ``user_id`` is NULL for guest threads."""
    __tablename__ = "conversations"

    id = Column(String(32), primary_key=True, default=_new_id)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    title = Column(String(80), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    last_message = Column(Text, nullable=True)
    message_count = Column(Integer, nullable=False, default=0)

    user = relationship("User", back_populates="conversations")
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.id",
    )


class Message(Base):
    """Persistent chat message row."""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        String(32), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role = Column(String(16), nullable=False)  # "user" or "assistant"
    content = Column(Text, nullable=False)
    image_base64 = Column(Text, nullable=True)
    image_mime_type = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    conversation = relationship("Conversation", back_populates="messages")


class KnowledgeItem(Base):
    """Uploaded knowledge file. Bytes live on disk under UPLOAD_DIR/<user_id>/."""
    __tablename__ = "knowledge_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    file_name = Column(String(255), nullable=False)
    stored_name = Column(String(64), nullable=False)
    mime_type = Column(String(128), nullable=False)
    file_size = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="READY")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ClientMemory(Base):
    """Something worth remembering about a member, extracted from a chat turn."""
    __tablename__ = "client_memories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    category = Column(String(32), nullable=False)
    information = Column(Text, nullable=False)
    importance = Column(Integer, nullable=False, default=5)  # 1 (minor) .. 10 (critical)
    context = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


@dataclass
class ExchangeResult:
    """Rows written by one successful chat turn."""
    conversation_id: str
    user_message: Message
    assistant_message: Message
    created_conversation: bool


_engine = None
_SessionLocal = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(database_url: str | None = None) -> None:
    """Create engine + tables. Call once at startup.

    Args:
        database_url: SQLAlchemy connection string. Defaults to DATABASE_URL env var.
    """
    global _engine, _SessionLocal

    url = database_url or os.environ.get("DATABASE_URL", "sqlite:///data/fitcoach.sqlite")
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            # One shared connection so the request threadpool sees the same database
            kwargs["poolclass"] = StaticPool
        else:
            db_path = url.split("///", 1)[-1]
            if os.path.dirname(db_path):
                os.makedirs(os.path.dirname(db_path), exist_ok=True)
        _engine = create_engine(url, echo=False, **kwargs)
        event.listen(_engine, "connect", _enable_sqlite_foreign_keys)
    else:
        _engine = create_engine(url, echo=False, pool_pre_ping=True)

    _SessionLocal = sessionmaker(bind=_engine, expire_on_commit=False)

    Base.metadata.create_all(_engine)
    logger.info("db.initialized", url=url.split("///")[0] + "///***")


def get_engine():
    return _engine


def get_session() -> Session:
    """Get a new database session."""
    if _SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()


# Users and plan bookkeeping

def get_or_create_user(user_id: str) -> User:
    """Return the user row for an auth identity, creating it on first sight."""
    with get_session() as session:
        user = session.get(User, user_id)
        if user is not None:
            return user
        user = User(id=user_id, plan="FREE", messages_used_today=0, last_message_reset=_today())
        session.add(user)
        try:
            session.commit()
        except IntegrityError:
            # Created by a concurrent request for the same identity
            session.rollback()
            return session.get(User, user_id)
        logger.info("db.user_created", user_id=user_id)
        return user


def _today() -> date:
    return _utcnow().date()


def _roll_over_day(session: Session, user_id: str, today: date) -> None:
    """Zero the counter when the stored reset day is not ``today``.

    Runs as one conditional UPDATE, so it cannot overwrite an increment made
    by a concurrent request that already rolled the day over.
    """
    result = session.execute(
        update(User)
        .where(User.id == user_id)
        .where(or_(User.last_message_reset.is_(None), User.last_message_reset != today))
        .values(messages_used_today=0, last_message_reset=today)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.debug("db.daily_usage_reset", user_id=user_id)


def get_daily_usage(user_id: str) -> tuple[str, int]:
    """Return (plan, messages used today), resetting the counter on a new day."""
    with get_session() as session:
        _roll_over_day(session, user_id, _today())
        session.commit()
        user = session.get(User, user_id)
        if user is None:
            return "FREE", 0
        return user.plan, user.messages_used_today


def reserve_message_slot(user_id: str, limit: int) -> bool:
    """Count one message against today's allowance if a slot is left.

    The check and the increment are a single ``UPDATE ... WHERE
    messages_used_today < limit``, so two concurrent requests cannot both take
    the last slot. PRO users always get a slot and are not counted.

    Returns:
        True when the message may be sent.
    """
    with get_session() as session:
        _roll_over_day(session, user_id, _today())
        result = session.execute(
            update(User)
            .where(User.id == user_id, User.plan == "FREE", User.messages_used_today < limit)
            .values(messages_used_today=User.messages_used_today + 1)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if result.rowcount == 1:
            return True
        user = session.get(User, user_id)
        return user is not None and user.plan == "PRO"


def release_message_slot(user_id: str) -> None:
    """Give back a slot taken by reserve_message_slot for a send that failed."""
    with get_session() as session:
        session.execute(
            update(User)
            .where(User.id == user_id, User.plan == "FREE", User.messages_used_today > 0)
            .where(User.last_message_reset == _today())
            .values(messages_used_today=User.messages_used_today - 1)
            .execution_options(synchronize_session=False)
        )
        session.commit()


def set_user_plan(user_id: str, plan: str) -> None:
    """Switch a user between FREE and PRO."""
    if plan not in ("FREE", "PRO"):
        raise ValueError(f"Unknown plan: {plan}")
    with get_session() as session:
        user = session.get(User, user_id)
        if user is None:
            user = User(id=user_id, last_message_reset=_today())
            session.add(user)
        user.plan = plan
        session.commit()
        logger.info("db.plan_changed", user_id=user_id, plan=plan)


# Conversations and messages

def build_title(text: str, image_count: int = 0) -> str:
    """Conversation title from the first message: 50 chars, ellipsis when cut."""
    text = text.strip()
    if not text:
        return image_placeholder(image_count) or "New conversation"
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


def image_placeholder(image_count: int) -> str:
    if image_count <= 0:
        return ""
    return f"[{image_count} Image{'s' if image_count > 1 else ''}]"


def find_conversation(conversation_id: str, user_id: str | None) -> Conversation | None:
    """Look up a conversation visible to the caller.

    Authenticated callers see only their own threads, guests (user_id None)
    only owner-less ones.
    """
    with get_session() as session:
        conv = session.get(Conversation, conversation_id)
        if conv is None or conv.user_id != user_id:
            return None
        return conv


def get_recent_messages(conversation_id: str, limit: int = 10) -> list[Message]:
    """Fetch the most recent messages for a conversation.

    Args:
        conversation_id: Conversation identifier.
        limit: Max number of messages to return (default 10).

    Returns:
        List of Message rows ordered oldest-first.
    """
    with get_session() as session:
        rows = (
            session.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.id.desc())
            .limit(limit)
            .all()
        )
        # Reverse to get chronological order (oldest first)
        rows.reverse()
        return rows


def get_conversation_messages(conversation_id: str) -> list[Message]:
    """Fetch the full chronological message list of a conversation."""
    with get_session() as session:
        return (
            session.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.id.asc())
            .all()
        )


def save_exchange(
    conversation_id: str | None,
    user_id: str | None,
    user_content: str,
    assistant_content: str,
    image_base64: str | None = None,
    image_mime_type: str | None = None,
) -> ExchangeResult:
    """Append one user/assistant message pair, creating the conversation if needed.

    Everything happens in one transaction: when ``conversation_id`` is None a
    new conversation row is inserted alongside the two messages.

    Raises:
        LookupError: If ``conversation_id`` names no conversation owned by ``user_id``.
    """
    with get_session() as session:
        created = False
        if conversation_id:
            conv = session.get(Conversation, conversation_id)
            if conv is None or conv.user_id != user_id:
                raise LookupError(conversation_id)
        else:
            conv = Conversation(
                id=_new_id(),
                user_id=user_id,
                title=build_title(user_content, 1 if image_base64 else 0),
            )
            session.add(conv)
            created = True

        now = _utcnow()
        user_msg = Message(
            conversation=conv,
            role="user",
            content=user_content.strip() or image_placeholder(1 if image_base64 else 0),
            image_base64=image_base64,
            image_mime_type=image_mime_type if image_base64 else None,
            created_at=now,
        )
        assistant_msg = Message(
            conversation=conv,
            role="assistant",
            content=assistant_content,
            created_at=now,
        )
        session.add_all([user_msg, assistant_msg])

        conv.updated_at = now
        conv.message_count = (conv.message_count or 0) + 2
        conv.last_message = assistant_content[:PREVIEW_MAX_CHARS]

        session.commit()
        logger.debug("db.exchange_saved", conversation_id=conv.id, created=created)
        return ExchangeResult(
            conversation_id=conv.id,
            user_message=user_msg,
            assistant_message=assistant_msg,
            created_conversation=created,
        )


def list_conversations(user_id: str, limit: int = 100) -> list[Conversation]:
    """Conversations owned by a user, most recently active first."""
    with get_session() as session:
        return (
            session.query(Conversation)
            .filter(Conversation.user_id == user_id)
            .order_by(Conversation.updated_at.desc(), Conversation.created_at.desc())
            .limit(limit)
            .all()
        )


def delete_conversation(conversation_id: str, user_id: str) -> bool:
    """Delete a conversation and its messages. Returns False if not found/not owned."""
    with get_session() as session:
        conv = session.get(Conversation, conversation_id)
        if conv is None or conv.user_id != user_id:
            return False
        session.delete(conv)
        session.commit()
        logger.info("db.conversation_deleted", conversation_id=conversation_id)
        return True


# Knowledge files

def save_knowledge_item(
    user_id: str,
    file_name: str,
    stored_name: str,
    mime_type: str,
    file_size: int,
) -> KnowledgeItem:
    with get_session() as session:
        item = KnowledgeItem(
            user_id=user_id,
            title=file_name,
            file_name=file_name,
            stored_name=stored_name,
            mime_type=mime_type,
            file_size=file_size,
            status="READY",
        )
        session.add(item)
        session.commit()
        return item


def get_knowledge_item(item_id: int, user_id: str) -> KnowledgeItem | None:
    with get_session() as session:
        item = session.get(KnowledgeItem, item_id)
        if item is None or item.user_id != user_id:
            return None
        return item


def list_knowledge_items(user_id: str) -> list[KnowledgeItem]:
    with get_session() as session:
        return (
            session.query(KnowledgeItem)
            .filter(KnowledgeItem.user_id == user_id)
            .order_by(KnowledgeItem.id.desc())
            .all()
        )


# Client memories

MAX_MEMORIES_PER_USER = 50


def save_client_memories(user_id: str, memories: list[dict]) -> int:
    """Store extracted memories, keeping only the user's most important ones.

    Args:
        user_id: Owner of the memories.
        memories: Dicts with ``category``, ``information``, ``importance`` and
            optionally ``context``. Items whose information is already stored
            for the user are skipped.

    Returns:
        Number of new rows written.
    """
    if not memories:
        return 0
    with get_session() as session:
        known = {
            row.information.strip().lower()
            for row in session.query(ClientMemory.information).filter(ClientMemory.user_id == user_id)
        }
        added = 0
        for item in memories:
            key = item["information"].strip().lower()
            if not key or key in known:
                continue
            known.add(key)
            session.add(ClientMemory(
                user_id=user_id,
                category=item["category"],
                information=item["information"].strip(),
                importance=item["importance"],
                context=item.get("context") or None,
            ))
            added += 1
        session.flush()

        overflow = (
            session.query(ClientMemory.id)
            .filter(ClientMemory.user_id == user_id)
            .order_by(ClientMemory.importance.desc(), ClientMemory.id.desc())
            .offset(MAX_MEMORIES_PER_USER)
            .all()
        )
        if overflow:
            session.query(ClientMemory).filter(
                ClientMemory.id.in_([row.id for row in overflow])
            ).delete(synchronize_session=False)

        session.commit()
        logger.debug("db.memories_saved", user_id=user_id, added=added, pruned=len(overflow))
        return added


def get_important_memories(user_id: str, min_importance: int = 7, limit: int = 10) -> list[ClientMemory]:
    """A user's most important memories, highest importance first."""
    with get_session() as session:
        return (
            session.query(ClientMemory)
            .filter(ClientMemory.user_id == user_id, ClientMemory.importance >= min_importance)
            .order_by(ClientMemory.importance.desc(), ClientMemory.id.desc())
            .limit(limit)
            .all()
        )
