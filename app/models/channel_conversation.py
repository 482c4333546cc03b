import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class ChannelConversation(Base):
    """Binding of a channel transport address to a profile and its open session."""

    __tablename__ = "channel_conversations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    channel = Column(Text, nullable=False)  # web, whatsapp, telegram
    transport_address = Column(Text, nullable=False)
    profile_id = Column(Uuid, ForeignKey("profiles.id"), nullable=False)
    session_id = Column(Text, nullable=False)
    last_inbound_at = Column(DateTime(timezone=True))
    last_outbound_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    profile = relationship("Profile")

    __table_args__ = (
        UniqueConstraint("channel", "transport_address", "profile_id", name="uq_channel_conversation_address"),
    )
