from typing import Optional

from pydantic import BaseModel, Field


class OwnerChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=8000)


class OwnerChatResponse(BaseModel):
    reply: str
    action: str
    target: Optional[str] = None
    # Present after a successful master verification; send back as X-Master-Token.
    master_token: Optional[str] = None


class OwnerChatHistoryItem(BaseModel):
    role: str
    content: str


class OwnerChatHistoryResponse(BaseModel):
    messages: list[OwnerChatHistoryItem]
