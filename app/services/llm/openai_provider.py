from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.llm.base import LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
GEMINI_OPENAI_CHAT_URL = "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions"


class OpenAIProvider(LLMProvider):
    """Chat completions over the OpenAI wire format.

    Also used for Gemini through its OpenAI-compatible endpoint, which takes
    ``max_tokens`` instead of ``max_completion_tokens``.
    """

    name = "openai"

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-5-mini",
        base_url: str = OPENAI_CHAT_URL,
        token_param: str = "max_completion_tokens",
        name: Optional[str] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url
        self.token_param = token_param
        if name:
            self.name = name

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        model = model or self.default_model
        if not self.api_key:
            raise LLMError(f"{self.name} API key is not configured")

        timeout = timeout_seconds if timeout_seconds is not None else 15.0
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            self.token_param: max_tokens,
        }
        logger.debug(f"{self.name} request: model={model}, messages_count={len(messages)}")

        with httpx.Client(timeout=timeout) as client:
            response = client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )

        if response.status_code != 200:
            logger.error(f"{self.name} error: {response.status_code} {response.text[:300]}")
            raise LLMError(f"{self.name} API error: {response.status_code}", status_code=response.status_code)

        data = response.json()
        content = ""
        if data.get("choices"):
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
        logger.debug(f"{self.name} content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
