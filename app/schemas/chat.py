from typing import Optional

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    slug: str = Field(..., min_length=1)
    # Opaque browser token; identifies the visitor across page loads.
    session_token: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1)
    language: Optional[str] = None


class ChatResponse(BaseModel):
    reply: str
    session_id: Optional[str] = None
    error: Optional[str] = None
