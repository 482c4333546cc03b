from app.schemas.chat import ChatRequest, ChatResponse
from app.schemas.owner_chat import OwnerChatRequest, OwnerChatResponse
from app.schemas.profile import IntegrationsUpdate, ProfileCreate, ProfileResponse, PublicProfile

__all__ = [
    "ChatRequest",
    "ChatResponse",
    "OwnerChatRequest",
    "OwnerChatResponse",
    "ProfileCreate",
    "ProfileResponse",
    "PublicProfile",
    "IntegrationsUpdate",
]
