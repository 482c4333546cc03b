from sqlalchemy import Column, DateTime, Integer, Text, Uuid
from sqlalchemy.sql import func

from app.database import Base

GLOBAL_KNOWLEDGE_ID = 1


class GlobalKnowledge(Base):
    """Platform-wide directives; a single row with id=1."""

    __tablename__ = "global_knowledge"

    id = Column(Integer, primary_key=True, default=GLOBAL_KNOWLEDGE_ID)
    content = Column(Text, nullable=False, default="")
    updated_by = Column(Uuid)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
