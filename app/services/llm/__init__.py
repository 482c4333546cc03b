from app.services.llm.base import LLMError, LLMProvider, LLMResponse, build_messages
from app.services.llm.openai_provider import GEMINI_OPENAI_CHAT_URL, OPENAI_CHAT_URL, OpenAIProvider

__all__ = [
    "LLMError",
    "LLMProvider",
    "LLMResponse",
    "OpenAIProvider",
    "build_messages",
    "OPENAI_CHAT_URL",
    "GEMINI_OPENAI_CHAT_URL",
]
