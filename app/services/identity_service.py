"""Map an inbound (channel, transport address) to a profile and conversation session."""

import os
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import ChannelConversation, Profile

logger = get_logger("identity_service")

WEB = "web"
WHATSAPP = "whatsapp"
TELEGRAM = "telegram"
CHANNELS = (WEB, WHATSAPP, TELEGRAM)

SESSION_PREFIXES = {WEB: "web", WHATSAPP: "wa", TELEGRAM: "tg"}

# First contact on a shared number: "Hi <slug>", "Salam <slug>".
GREETING_SLUG_RE = re.compile(r"^\s*(?:hi|hello|hey|salam)\s+(\S+)", re.IGNORECASE)

SESSION_INACTIVITY_HOURS = float(os.environ.get("SESSION_INACTIVITY_HOURS", "0"))


@dataclass
class ResolvedIdentity:
    profile_id: UUID
    session_id: str
    is_new_session: bool


def normalize_address(channel: str, address: str) -> str:
    value = (address or "").strip()
    if channel == WHATSAPP:
        value = value.replace("whatsapp:", "").replace("+", "").replace(" ", "")
    return value


def new_session_id(channel: str, address: str) -> str:
    prefix = SESSION_PREFIXES.get(channel, channel)
    # Suffix: an address may rebind twice within one millisecond.
    return f"{prefix}-{address}-{int(time.time() * 1000)}-{secrets.token_hex(2)}"


def extract_greeting_slug(text: Optional[str]) -> Optional[str]:
    match = GREETING_SLUG_RE.match(text or "")
    if not match:
        return None
    slug = match.group(1).strip().lower().strip(".,!?;:")
    return slug or None


def find_active_profile_by_slug(db: Session, slug: Optional[str]) -> Optional[Profile]:
    if not slug:
        return None
    return (
        db.query(Profile)
        .filter(Profile.slug == slug.strip().lower(), Profile.is_active == True)  # noqa: E712
        .first()
    )


def _channel_enabled(profile: Profile, channel: str) -> bool:
    if channel == WHATSAPP:
        return bool(profile.whatsapp_chat_enabled)
    if channel == TELEGRAM:
        return bool(profile.telegram_chat_enabled)
    return True


def _serves_channel(profile: Optional[Profile], channel: str) -> bool:
    return bool(profile is not None and profile.is_active and _channel_enabled(profile, channel))


def find_master_profile(db: Session, channel: str) -> Optional[Profile]:
    master = (
        db.query(Profile)
        .filter(Profile.is_master == True, Profile.is_active == True)  # noqa: E712
        .first()
    )
    if master and _channel_enabled(master, channel):
        return master
    return None


def _latest_binding(db: Session, channel: str, address: str) -> Optional[ChannelConversation]:
    return (
        db.query(ChannelConversation)
        .filter(
            ChannelConversation.channel == channel,
            ChannelConversation.transport_address == address,
        )
        .order_by(ChannelConversation.updated_at.desc(), ChannelConversation.created_at.desc())
        .first()
    )


def _binding_for_profile(db: Session, channel: str, address: str, profile_id: UUID) -> Optional[ChannelConversation]:
    return (
        db.query(ChannelConversation)
        .filter(
            ChannelConversation.channel == channel,
            ChannelConversation.transport_address == address,
            ChannelConversation.profile_id == profile_id,
        )
        .first()
    )


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _is_stale(binding: ChannelConversation, now: datetime) -> bool:
    if SESSION_INACTIVITY_HOURS <= 0 or binding.last_inbound_at is None:
        return False
    return now - _as_aware(binding.last_inbound_at) > timedelta(hours=SESSION_INACTIVITY_HOURS)


def _bind(db: Session, channel: str, address: str, profile_id: UUID, now: datetime) -> ResolvedIdentity:
    """Point the (channel, address, profile) binding at a fresh session, creating it if needed."""
    session_id = new_session_id(channel, address)
    binding = _binding_for_profile(db, channel, address, profile_id)
    if binding:
        binding.session_id = session_id
        binding.last_inbound_at = now
        binding.updated_at = now
        db.commit()
        return ResolvedIdentity(profile_id=profile_id, session_id=session_id, is_new_session=True)

    binding = ChannelConversation(
        channel=channel,
        transport_address=address,
        profile_id=profile_id,
        session_id=session_id,
        last_inbound_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(binding)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent first message created the row; reuse its session.
        db.rollback()
        winner = _binding_for_profile(db, channel, address, profile_id)
        if winner is None:
            raise
        logger.info(
            "Binding race lost, reusing existing session",
            extra={"context": {"channel": channel, "session_id": winner.session_id}},
        )
        return ResolvedIdentity(profile_id=profile_id, session_id=winner.session_id, is_new_session=False)

    logger.info(
        "New conversation session",
        extra={"context": {"channel": channel, "profile_id": str(profile_id), "session_id": session_id}},
    )
    return ResolvedIdentity(profile_id=profile_id, session_id=session_id, is_new_session=True)


def resolve(
    db: Session,
    channel: str,
    transport_address: str,
    text: Optional[str] = None,
    explicit_slug: Optional[str] = None,
) -> Optional[ResolvedIdentity]:
    """Resolve an inbound message to (profile, session).

    Order: existing binding, explicit slug / greeting+slug, master fallback.
    Returns None when nothing matches; no row is written in that case.
    An explicit slug naming a different profile than the current binding
    switches the address to that profile with a new session.
    """
    if channel not in CHANNELS:
        raise ValueError(f"Unknown channel: {channel}")
    address = normalize_address(channel, transport_address)
    if not address:
        return None
    now = datetime.now(timezone.utc)

    hinted = find_active_profile_by_slug(db, explicit_slug)
    if not _serves_channel(hinted, channel):
        hinted = None

    binding = _latest_binding(db, channel, address)
    if binding is not None and not _serves_channel(binding.profile, channel):
        binding = None

    if binding and (hinted is None or hinted.id == binding.profile_id):
        if _is_stale(binding, now):
            return _bind(db, channel, address, binding.profile_id, now)
        _touch_inbound_binding(db, binding, now)
        return ResolvedIdentity(profile_id=binding.profile_id, session_id=binding.session_id, is_new_session=False)

    target = hinted
    if target is None:
        target = find_active_profile_by_slug(db, extract_greeting_slug(text))
        if not _serves_channel(target, channel):
            target = None
    if target is None:
        target = find_master_profile(db, channel)
    if target is None:
        return None

    return _bind(db, channel, address, target.id, now)


def reset_session(
    db: Session,
    channel: str,
    transport_address: str,
    explicit_slug: Optional[str] = None,
) -> Optional[ResolvedIdentity]:
    """Start a fresh session for the address, switching profile when a slug is given.

    A slug that names no active profile serving this channel yields None and
    leaves the current binding untouched.
    """
    address = normalize_address(channel, transport_address)
    if not address:
        return None
    now = datetime.now(timezone.utc)
    if explicit_slug:
        target = find_active_profile_by_slug(db, explicit_slug)
        if not _serves_channel(target, channel):
            return None
        return _bind(db, channel, address, target.id, now)

    binding = _latest_binding(db, channel, address)
    if binding is None or not _serves_channel(binding.profile, channel):
        return None
    return _bind(db, channel, address, binding.profile_id, now)


def _touch_inbound_binding(db: Session, binding: ChannelConversation, now: datetime) -> None:
    binding.last_inbound_at = now
    binding.updated_at = now
    db.commit()


def touch_outbound(db: Session, channel: str, transport_address: str, profile_id: UUID) -> None:
    binding = _binding_for_profile(db, channel, normalize_address(channel, transport_address), profile_id)
    if binding:
        binding.last_outbound_at = datetime.now(timezone.utc)
        db.commit()
