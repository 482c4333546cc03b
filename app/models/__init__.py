from app.models.channel_conversation import ChannelConversation
from app.models.global_knowledge import GLOBAL_KNOWLEDGE_ID, GlobalKnowledge
from app.models.message import Message
from app.models.owner_chat import OwnerChatMessage, OwnerChatSession
from app.models.profile import Profile

__all__ = [
    "Profile",
    "GlobalKnowledge",
    "GLOBAL_KNOWLEDGE_ID",
    "ChannelConversation",
    "Message",
    "OwnerChatSession",
    "OwnerChatMessage",
]
