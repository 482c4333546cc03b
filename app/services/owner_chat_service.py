"""Owner-facing chat: grows the knowledge base from conversation and gates global edits."""

import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import OwnerChatMessage, OwnerChatSession, Profile
from app.services import (
    classification_service,
    global_knowledge_service,
    knowledge_service,
    master_service,
    profile_service,
)
from app.services.ai_service import extract_json, generate_text
from app.services.classification_service import ASK
from app.services.knowledge_service import PRIVATE, PUBLIC
from app.services.prompt_service import build_owner_prompt
from app.services.rate_limit_service import check_rate_limit
from app.services.security_service import (
    DEFLECTION_REPLY,
    MASTER_VERIFICATION_FAILED,
    detect_prompt_injection,
    log_security_event,
    report_prompt_injection,
)

logger = get_logger("owner_chat_service")

OWNER_HISTORY_MESSAGES = int(os.environ.get("OWNER_HISTORY_MESSAGES", "12"))
OWNER_REPLY_MAX_TOKENS = int(os.environ.get("OWNER_REPLY_MAX_TOKENS", "600"))
OWNER_AUTOCREATE_TURNS = int(os.environ.get("OWNER_AUTOCREATE_TURNS", "6"))

# Actions reported back to the client.
ACTION_REPLY = "reply"
ACTION_UPDATED = "knowledge_updated"
ACTION_ASK_TIER = "ask_tier"
ACTION_MASTER_CHALLENGE = "master_challenge"
ACTION_MASTER_VERIFIED = "master_verified"
ACTION_MASTER_FAILED = "master_failed"
ACTION_GLOBAL_UPDATED = "global_updated"
ACTION_GLOBAL_FAILED = "global_failed"
ACTION_FORBIDDEN = "forbidden"
ACTION_BLOCKED = "blocked"
ACTION_RATE_LIMITED = "rate_limited"
ACTION_PROFILE_CREATED = "profile_created"

ASK_TIER_REPLY = (
    "Should I add this to your public knowledge base (visible to customers) "
    "or to your private vault (only for you)? Reply \"public\" or \"private\"."
)
MASTER_CHALLENGE_REPLY = "This changes the global knowledge base. Please send the master secret phrase first."
MASTER_VERIFIED_REPLY = "Master access verified. You can now edit the global knowledge base."
MASTER_FAILED_REPLY = "Verification failed. The global knowledge base was not changed."
NOT_MASTER_REPLY = "Only the platform master profile can change the global knowledge base."
GLOBAL_UPDATED_REPLY = "Global knowledge base updated."
GLOBAL_FAILED_REPLY = "I couldn't update the global knowledge base. Please try again."
UPDATED_REPLY = {PUBLIC: "Saved to your public knowledge base.", PRIVATE: "Saved to your private vault."}
OWNER_FALLBACK_REPLY = "Sorry, something went wrong. Please try again."
RATE_LIMITED_REPLY = "You're sending messages too quickly. Please wait a minute."

PUBLIC_CHOICE_RE = re.compile(r"^\s*(public|публич\w*|открыт\w*|ictimai|açıq)\b", re.IGNORECASE)
PRIVATE_CHOICE_RE = re.compile(r"^\s*(private|приват\w*|личн\w*|закрыт\w*|gizli|şəxsi)\b", re.IGNORECASE)

PROFILE_EXTRACTION_PROMPT = (
    "From this conversation with a business owner, extract their business profile. "
    'Return ONLY valid JSON: {"business_name":"","profession":"","slug":"","knowledge_base":""}. '
    "slug: short lowercase latin identifier. knowledge_base: everything customers should know, as plain text."
)


@dataclass
class OwnerChatReply:
    reply: str
    action: str = ACTION_REPLY
    target: Optional[str] = None
    master_token: Optional[str] = None


def get_or_create_owner_session(db: Session, user_id: str) -> OwnerChatSession:
    session = db.query(OwnerChatSession).filter(OwnerChatSession.user_id == user_id).first()
    if session is None:
        session = OwnerChatSession(user_id=user_id)
        db.add(session)
        db.flush()
    return session


def _save_owner_message(db: Session, user_id: str, role: str, content: str) -> None:
    db.add(
        OwnerChatMessage(
            user_id=user_id,
            role=role,
            content=content,
            created_at=datetime.now(timezone.utc),
        )
    )
    db.flush()


def get_owner_history(db: Session, user_id: str, limit: int = OWNER_HISTORY_MESSAGES) -> list[dict]:
    rows = (
        db.query(OwnerChatMessage)
        .filter(OwnerChatMessage.user_id == user_id)
        .order_by(OwnerChatMessage.created_at.desc())
        .limit(limit)
        .all()
    )
    return [{"role": row.role, "content": row.content} for row in reversed(rows)]


def _finish(db: Session, user_id: str, result: OwnerChatReply) -> OwnerChatReply:
    _save_owner_message(db, user_id, "assistant", result.reply)
    db.commit()
    return result


def _parse_tier_choice(text: str) -> Optional[str]:
    if PUBLIC_CHOICE_RE.match(text or ""):
        return PUBLIC
    if PRIVATE_CHOICE_RE.match(text or ""):
        return PRIVATE
    return None


def _apply_update(db: Session, profile: Profile, user_id: str, tier: str, info: str) -> OwnerChatReply:
    if classification_service.apply_knowledge_update(db, profile.id, tier, info):
        return OwnerChatReply(reply=UPDATED_REPLY[tier], action=ACTION_UPDATED, target=tier)
    # Rejected rewrite: carry on as an ordinary conversational turn.
    return OwnerChatReply(reply=_assistant_reply(db, profile, user_id))


def _handle_global_command(
    db: Session,
    session: OwnerChatSession,
    profile: Optional[Profile],
    command: global_knowledge_service.GlobalCommand,
    master_token: Optional[str],
) -> OwnerChatReply:
    if profile is None or not profile.is_master:
        return OwnerChatReply(reply=NOT_MASTER_REPLY, action=ACTION_FORBIDDEN)
    if not master_service.is_verified_master(profile, master_token):
        session.awaiting_master_secret = True
        return OwnerChatReply(reply=MASTER_CHALLENGE_REPLY, action=ACTION_MASTER_CHALLENGE)

    result = global_knowledge_service.run_global_command(db, command, profile.id)
    if not result.ok:
        return OwnerChatReply(reply=GLOBAL_FAILED_REPLY, action=ACTION_GLOBAL_FAILED, master_token=master_token)
    return OwnerChatReply(reply=GLOBAL_UPDATED_REPLY, action=ACTION_GLOBAL_UPDATED, master_token=master_token)


def _handle_master_secret(session: OwnerChatSession, profile: Optional[Profile], user_id: str, text: str) -> OwnerChatReply:
    session.awaiting_master_secret = False
    if profile is not None and profile.is_master and master_service.verify_secret_phrase(text):
        token = master_service.issue_master_token(profile.id)
        logger.info("Master verified", extra={"context": {"profile_id": str(profile.id)}})
        return OwnerChatReply(reply=MASTER_VERIFIED_REPLY, action=ACTION_MASTER_VERIFIED, master_token=token)
    log_security_event(MASTER_VERIFICATION_FAILED, {"user_id": user_id})
    return OwnerChatReply(reply=MASTER_FAILED_REPLY, action=ACTION_MASTER_FAILED)


def maybe_autocreate_profile(db: Session, session: OwnerChatSession, user_id: str) -> Optional[Profile]:
    """Create the owner's profile from the interview once enough turns have happened."""
    if session.user_turns < OWNER_AUTOCREATE_TURNS:
        return None
    history = get_owner_history(db, user_id, limit=OWNER_AUTOCREATE_TURNS * 2)
    transcript = "\n".join(f"{'Owner' if m['role'] == 'user' else 'Assistant'}: {m['content']}" for m in history)
    payload = extract_json(PROFILE_EXTRACTION_PROMPT, transcript, max_tokens=1200, stage="profile_extract")
    if not payload or not isinstance(payload.get("business_name"), str) or not payload["business_name"].strip():
        return None

    business_name = payload["business_name"].strip()
    knowledge = payload.get("knowledge_base") if isinstance(payload.get("knowledge_base"), str) else ""
    profession = payload.get("profession") if isinstance(payload.get("profession"), str) else ""
    profile = Profile(
        user_id=user_id,
        slug=profile_service.unique_slug(db, payload.get("slug") if isinstance(payload.get("slug"), str) else business_name),
        business_name=business_name,
        display_name=business_name,
        profession=profession.strip(),
        knowledge_base=knowledge.strip() or None,
        onboarding_complete=bool(knowledge.strip()),
    )
    db.add(profile)
    db.flush()
    logger.info("Profile auto-created from owner chat", extra={"context": {"user_id": user_id, "slug": profile.slug}})
    return profile


def _assistant_reply(db: Session, profile: Optional[Profile], user_id: str) -> str:
    prompt = build_owner_prompt(
        profile,
        profile.knowledge_base if profile else None,
        profile.private_vault if profile else None,
        knowledge_service.get_global(db),
    )
    history = get_owner_history(db, user_id)
    # The owner's newest message is already the last history item.
    try:
        reply = generate_text(prompt, history, None, OWNER_REPLY_MAX_TOKENS, stage="owner_reply")
    except Exception as exc:
        logger.warning(f"Owner reply failed: {exc}")
        return OWNER_FALLBACK_REPLY
    return reply or OWNER_FALLBACK_REPLY


def handle_owner_message(
    db: Session,
    user_id: str,
    text: str,
    master_token: Optional[str] = None,
) -> OwnerChatReply:
    text = (text or "").strip()
    decision = check_rate_limit("owner", user_id)
    if not decision.allowed:
        return OwnerChatReply(reply=RATE_LIMITED_REPLY, action=ACTION_RATE_LIMITED)

    session = get_or_create_owner_session(db, user_id)
    profile = profile_service.get_owner_profile(db, user_id)

    # A pending secret phrase must be checked before the injection filter sees it.
    if session.awaiting_master_secret:
        _save_owner_message(db, user_id, "user", "[master secret phrase]")
        return _finish(db, user_id, _handle_master_secret(session, profile, user_id, text))

    if detect_prompt_injection(text):
        report_prompt_injection("owner", user_id, text, profile.slug if profile else None)
        db.commit()
        return OwnerChatReply(reply=DEFLECTION_REPLY, action=ACTION_BLOCKED)

    _save_owner_message(db, user_id, "user", text)
    session.user_turns = (session.user_turns or 0) + 1

    command = global_knowledge_service.detect_global_command(text)
    if command is not None:
        session.pending_update = None
        return _finish(db, user_id, _handle_global_command(db, session, profile, command, master_token))

    if profile is None:
        profile = maybe_autocreate_profile(db, session, user_id)
        if profile is not None:
            db.commit()
            reply = (
                f"Your receptionist \"{profile.business_name}\" is ready at /{profile.slug}. "
                "Keep telling me about your business and I'll keep its knowledge up to date."
            )
            return _finish(db, user_id, OwnerChatReply(reply=reply, action=ACTION_PROFILE_CREATED))
        return _finish(db, user_id, OwnerChatReply(reply=_assistant_reply(db, None, user_id)))

    if session.pending_update:
        choice = _parse_tier_choice(text)
        pending = session.pending_update
        session.pending_update = None
        if choice is not None:
            return _finish(db, user_id, _apply_update(db, profile, user_id, choice, pending))
        # Anything else abandons the pending update and is handled as a new message.
        logger.info("Pending knowledge update abandoned", extra={"context": {"user_id": user_id}})

    decision = classification_service.classify(
        text,
        has_public_kb=bool((profile.knowledge_base or "").strip()),
        has_private_vault=bool((profile.private_vault or "").strip()),
    )
    if decision.wants_update and decision.target == ASK:
        session.pending_update = text
        return _finish(db, user_id, OwnerChatReply(reply=ASK_TIER_REPLY, action=ACTION_ASK_TIER, target=ASK))
    if decision.wants_update and decision.target in (PUBLIC, PRIVATE):
        return _finish(db, user_id, _apply_update(db, profile, user_id, decision.target, text))

    return _finish(db, user_id, OwnerChatReply(reply=_assistant_reply(db, profile, user_id)))
