from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMError(Exception):
    """Provider returned a non-success response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LLMProvider(ABC):
    """Abstract base class for chat-completion providers."""

    name = "llm"

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate a completion for role/content messages (system slot first)."""
        pass


def build_messages(system_prompt: str, history: List[dict], user_turn: Optional[str]) -> List[dict]:
    """System instruction, prior turns, then the new user turn."""
    messages = [{"role": "system", "content": system_prompt}]
    for item in history or []:
        role = item.get("role")
        content = item.get("content") or item.get("text") or ""
        if role not in {"user", "assistant"} or not content:
            continue
        messages.append({"role": role, "content": content})
    if user_turn:
        messages.append({"role": "user", "content": user_turn})
    return messages
