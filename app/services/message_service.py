from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.models import Message

MAX_HISTORY_MESSAGES = 10


def save_message(
    db: Session,
    profile_id: UUID,
    session_id: str,
    role: str,
    content: str,
    channel: str = "web",
    content_type: str = "text",
    marker: Optional[str] = None,
    contact_raw: Optional[str] = None,
) -> Message:
    """Append a message to the session transcript (flushed, not committed)."""
    message = Message(
        profile_id=profile_id,
        session_id=session_id,
        channel=channel,
        role=role,
        content=content,
        content_type=content_type,
        marker=marker,
        contact_raw=contact_raw,
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    return message


def get_session_messages(db: Session, profile_id: UUID, session_id: str) -> List[Message]:
    return (
        db.query(Message)
        .filter(Message.profile_id == profile_id, Message.session_id == session_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )


def get_conversation_history(
    db: Session,
    profile_id: UUID,
    session_id: str,
    limit: int = MAX_HISTORY_MESSAGES,
) -> List[dict]:
    """Recent visitor/assistant turns in chronological order, markers excluded."""
    messages = (
        db.query(Message)
        .filter(
            Message.profile_id == profile_id,
            Message.session_id == session_id,
            Message.role.in_(("user", "assistant")),
        )
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
        .all()
    )
    return [{"role": msg.role, "content": msg.content} for msg in reversed(messages)]


def count_user_messages(db: Session, profile_id: UUID, session_id: str) -> int:
    return (
        db.query(Message)
        .filter(
            Message.profile_id == profile_id,
            Message.session_id == session_id,
            Message.role == "user",
        )
        .count()
    )


def format_transcript(messages: List[Message]) -> str:
    lines = []
    for msg in messages:
        if msg.role not in {"user", "assistant"}:
            continue
        speaker = "Client" if msg.role == "user" else "Assistant"
        lines.append(f"{speaker}: {msg.content}")
    return "\n".join(lines)
