"""One visitor turn, shared by the web widget, WhatsApp and Telegram adapters."""

import os
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from app.logging_config import LoggerAdapter, get_logger
from app.models import Profile
from app.services import identity_service, knowledge_service
from app.services.ai_service import generate_text
from app.services.message_service import get_conversation_history, save_message
from app.services.pii_service import contact_spans, redact_pii
from app.services.prompt_service import build_system_prompt
from app.services.rate_limit_service import TELEGRAM_MAX_MESSAGE_CHARS, check_rate_limit
from app.services.result import (
    AI_ERROR,
    INJECTION_BLOCKED,
    MESSAGE_TOO_LONG,
    NO_KNOWLEDGE_BASE,
    NO_PROFILE,
    RATE_LIMITED,
    Result,
)
from app.services.security_service import (
    DEFLECTION_REPLY,
    RATE_LIMIT_EXCEEDED,
    detect_prompt_injection,
    log_security_event,
    report_prompt_injection,
)

logger = get_logger("chat_service")

REPLY_MAX_TOKENS = int(os.environ.get("REPLY_MAX_TOKENS", "500"))
MAX_MESSAGE_CHARS = {"telegram": TELEGRAM_MAX_MESSAGE_CHARS, "web": 2000, "whatsapp": 2000}

NO_ACTIVE_PROFILE_REPLY = "No business is currently active here. Please try again later."
TOO_MANY_MESSAGES_REPLY = "Too many messages. Please wait a moment and try again."
TELEGRAM_BAN_REPLY = "⏳ Too many messages. You've been temporarily paused for 10 minutes. Please try again later."
MESSAGE_TOO_LONG_REPLY = "Your message is too long. Please keep it under {limit} characters."


@dataclass
class CustomerTurn:
    profile_id: UUID
    session_id: str
    reply: str
    is_new_session: bool
    # Raw inbound text, kept in memory only, for lead detection.
    customer_text: str
    ai_failed: bool = False


def _rate_limited_result(channel: str, address: str) -> Optional[Result[CustomerTurn]]:
    decision = check_rate_limit(channel, address)
    if decision.allowed:
        return None
    log_security_event(RATE_LIMIT_EXCEEDED, {"channel": channel, "address": address, "ban_started": decision.ban_started})
    if channel == "telegram":
        # Only the first blocked message of a ban gets a notice.
        reply = TELEGRAM_BAN_REPLY if decision.ban_started else None
    else:
        reply = TOO_MANY_MESSAGES_REPLY
    return Result.failure("Rate limit exceeded", RATE_LIMITED, fallback_reply=reply)


def handle_customer_turn(
    db: Session,
    channel: str,
    address: str,
    text: str,
    language: Optional[str] = None,
    explicit_slug: Optional[str] = None,
) -> Result[CustomerTurn]:
    """Rate limit, guard, resolve, answer and persist one visitor message.

    Failures come back as Result.failure with a fallback_reply the adapter
    can send (None means: send nothing).
    """
    limited = _rate_limited_result(channel, address)
    if limited is not None:
        return limited

    limit = MAX_MESSAGE_CHARS.get(channel, 2000)
    if len(text) > limit:
        return Result.failure("Message too long", MESSAGE_TOO_LONG, fallback_reply=MESSAGE_TOO_LONG_REPLY.format(limit=limit))

    if detect_prompt_injection(text):
        report_prompt_injection(channel, address, text, explicit_slug)
        return Result.failure("Prompt injection blocked", INJECTION_BLOCKED, fallback_reply=DEFLECTION_REPLY)

    identity = identity_service.resolve(db, channel, address, text=text, explicit_slug=explicit_slug)
    if identity is None:
        logger.info("No profile resolved", extra={"context": {"channel": channel}})
        return Result.failure("No active profile", NO_PROFILE, fallback_reply=NO_ACTIVE_PROFILE_REPLY)

    log = LoggerAdapter(logger, {"channel": channel, "session_id": identity.session_id})
    profile = db.query(Profile).filter(Profile.id == identity.profile_id).first()
    knowledge = knowledge_service.select_public_knowledge(profile, language)
    if not knowledge:
        log.info("Profile has no knowledge base", context={"profile_id": str(profile.id)})
        return Result.failure(
            "No knowledge base",
            NO_KNOWLEDGE_BASE,
            fallback_reply=knowledge_service.fallback_reply(language),
        )

    history = get_conversation_history(db, profile.id, identity.session_id)
    system_prompt = build_system_prompt(profile, knowledge, knowledge_service.get_global(db), language, channel)

    ai_failed = False
    try:
        reply = generate_text(system_prompt, history, text, REPLY_MAX_TOKENS, stage="customer_reply")
    except httpx.TimeoutException as exc:
        log.warning(f"Reply generation timed out: {exc}", context={"error_code": AI_ERROR})
        reply = ""
    except Exception as exc:
        log.error(f"Reply generation failed: {exc}", context={"error_code": AI_ERROR})
        reply = ""
    if not reply:
        ai_failed = True
        reply = knowledge_service.fallback_reply(language)

    contacts = "\n".join(contact_spans(text)) or None
    save_message(
        db, profile.id, identity.session_id, "user", redact_pii(text), channel=channel, contact_raw=contacts
    )
    save_message(db, profile.id, identity.session_id, "assistant", redact_pii(reply), channel=channel)
    db.commit()
    log.info("Customer turn answered", context={"reply_chars": len(reply), "ai_failed": ai_failed})

    return Result.success(
        CustomerTurn(
            profile_id=profile.id,
            session_id=identity.session_id,
            reply=reply,
            is_new_session=identity.is_new_session,
            customer_text=text,
            ai_failed=ai_failed,
        )
    )
