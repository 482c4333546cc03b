import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, Text, Uuid
from sqlalchemy.sql import func

from app.database import Base


class OwnerChatSession(Base):
    __tablename__ = "owner_chat_sessions"

    user_id = Column(Text, primary_key=True)
    awaiting_master_secret = Column(Boolean, nullable=False, default=False)
    # Owner statement waiting for a "public or private?" answer.
    pending_update = Column(Text)
    user_turns = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class OwnerChatMessage(Base):
    __tablename__ = "owner_chat_messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    role = Column(Text, nullable=False)  # user, assistant
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
