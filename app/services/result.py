from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

# Failure codes shared by services and routers.
NO_PROFILE = "no_profile"
NO_KNOWLEDGE_BASE = "no_knowledge_base"
RATE_LIMITED = "rate_limited"
MESSAGE_TOO_LONG = "message_too_long"
INJECTION_BLOCKED = "injection_blocked"
AI_ERROR = "ai_error"
INVALID_URL = "invalid_url"
NOT_MASTER = "not_master"
TRANSLATION_FAILED = "translation_failed"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    # Safe reply a chat surface may show when ok is False.
    fallback_reply: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown", fallback_reply: Optional[str] = None) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, fallback_reply=fallback_reply)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
