import json
import os
import re
import time
from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.llm import OpenAIProvider, build_messages

logger = get_logger("ai_service")

OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
FAST_MODEL = os.environ.get("FAST_MODEL", "gpt-5-mini")
REPLY_MODEL = os.environ.get("REPLY_MODEL", FAST_MODEL)
LLM_TIMEOUT_SECONDS = float(os.environ.get("LLM_TIMEOUT_SECONDS", "15"))
LLM_MAX_TOKENS = int(os.environ.get("LLM_MAX_TOKENS", "600"))
JSON_TIMEOUT_SECONDS = float(os.environ.get("JSON_TIMEOUT_SECONDS", "10"))
JSON_MAX_TOKENS = int(os.environ.get("JSON_MAX_TOKENS", "300"))

# Global LLM provider instance
_llm_provider = None

CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _log_timing(
    stage: str,
    elapsed_ms: float,
    *,
    timing_context: dict | None = None,
    extra: dict | None = None,
) -> None:
    context: dict = {}
    if timing_context:
        context.update(timing_context)
    if extra:
        context.update(extra)
    context["stage"] = stage
    context["elapsed_ms"] = round(elapsed_ms, 2)
    logger.info("Timing", extra={"context": context})


def get_llm_provider() -> OpenAIProvider:
    """Get or create LLM provider instance."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(api_key=OPENAI_API_KEY, default_model=FAST_MODEL)
    return _llm_provider


def _temperature_for(model: str, temperature: float) -> float:
    # gpt-5 family only accepts the default temperature.
    return 1.0 if model.strip().lower().startswith("gpt-5") else temperature


def normalize_for_matching(text: str) -> str:
    """Normalize text for phrase matching (casefold, collapse spaces, trim punctuation)."""
    if not text:
        return ""

    normalized = text.strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    normalized = re.sub(r"^[^\w]+|[^\w]+$", "", normalized)
    return normalized


def generate_text(
    system_prompt: str,
    history: Optional[List[dict]],
    user_turn: Optional[str],
    max_tokens: int = LLM_MAX_TOKENS,
    *,
    model: Optional[str] = None,
    temperature: float = 0.7,
    timeout_seconds: Optional[float] = None,
    stage: str = "reply",
) -> str:
    """Single chat completion: system slot, history turns, then the user turn.

    Raises on transport/provider failure; callers decide the fallback.
    """
    model = model or REPLY_MODEL
    timeout = timeout_seconds if timeout_seconds is not None else LLM_TIMEOUT_SECONDS
    messages = build_messages(system_prompt, history or [], user_turn)

    llm = get_llm_provider()
    llm_start = time.monotonic()
    try:
        response = llm.generate(
            messages,
            model=model,
            temperature=_temperature_for(model, temperature),
            max_tokens=max_tokens,
            timeout_seconds=timeout,
        )
    except httpx.TimeoutException:
        _log_timing(
            f"{stage}_llm_ms",
            (time.monotonic() - llm_start) * 1000,
            extra={"model_name": model, "timeout": True, "timeout_seconds": timeout},
        )
        raise
    except Exception as exc:
        _log_timing(
            f"{stage}_llm_ms",
            (time.monotonic() - llm_start) * 1000,
            extra={"model_name": model, "timeout": False, "error": str(exc)},
        )
        raise

    _log_timing(
        f"{stage}_llm_ms",
        (time.monotonic() - llm_start) * 1000,
        extra={"model_name": model, "timeout": False},
    )
    return (response.content or "").strip()


def strip_code_fences(content: str) -> str:
    return CODE_FENCE_RE.sub("", (content or "").strip()).strip()


def parse_json_object(content: str) -> dict | None:
    """Parse a JSON object from model output; tolerates fences and surrounding prose."""
    cleaned = strip_code_fences(content)
    if not cleaned:
        return None

    payload = None
    try:
        payload = json.loads(cleaned)
    except Exception:
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if match:
            try:
                payload = json.loads(match.group(0))
            except Exception:
                payload = None

    return payload if isinstance(payload, dict) else None


def extract_json(
    system_prompt: str,
    user_turn: str,
    max_tokens: int = JSON_MAX_TOKENS,
    *,
    stage: str = "json",
) -> dict | None:
    """Run a JSON-only prompt. Any failure or unparseable output yields None."""
    try:
        content = generate_text(
            system_prompt,
            [],
            user_turn,
            max_tokens,
            model=FAST_MODEL,
            temperature=0.0,
            timeout_seconds=JSON_TIMEOUT_SECONDS,
            stage=stage,
        )
    except httpx.TimeoutException as exc:
        logger.warning(f"{stage} timeout after {JSON_TIMEOUT_SECONDS}s: {exc}")
        return None
    except Exception as exc:
        logger.warning(f"{stage} failed: {exc}")
        return None

    payload = parse_json_object(content)
    if payload is None:
        logger.warning(f"{stage} returned non-JSON output", extra={"context": {"content": content[:200]}})
    return payload
