import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, Uuid

from app.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    profile_id = Column(Uuid, ForeignKey("profiles.id"), nullable=False)
    session_id = Column(Text, nullable=False)
    channel = Column(Text, nullable=False, default="web")
    role = Column(Text, nullable=False)  # user, assistant, system, owner
    content = Column(Text, nullable=False)
    content_type = Column(Text, nullable=False, default="text")  # text, system
    # Set only on idempotency-marker rows, e.g. "webhook-sent".
    marker = Column(Text)
    # Contact spans cut from a redacted user turn; read only by lead extraction.
    contact_raw = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_messages_session", "profile_id", "session_id", "created_at"),
        Index("uq_messages_session_marker", "profile_id", "session_id", "marker", unique=True),
    )
