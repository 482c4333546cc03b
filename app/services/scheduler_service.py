"""Periodic sweeps: lead follow-ups and owner activity summaries."""

import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import ChannelConversation, Message, Profile
from app.services import delivery_service
from app.services.alert_service import alert_error
from app.services.identity_service import WHATSAPP
from app.services.lead_service import (
    ALTEGIO,
    FOLLOWUP,
    MARKER_TAGS,
    WEBHOOK,
    append_marker,
    has_marker,
)
from app.services.lead_service import WHATSAPP as WHATSAPP_LEAD

logger = get_logger("scheduler_service")

SCHEDULER_INTERVAL_SECONDS = float(os.environ.get("SCHEDULER_INTERVAL_SECONDS", "1800"))
FOLLOWUP_BATCH_LIMIT = int(os.environ.get("FOLLOWUP_BATCH_LIMIT", "10"))
FOLLOWUP_LOOKBACK_DAYS = int(os.environ.get("FOLLOWUP_LOOKBACK_DAYS", "7"))

SUMMARY_PERIODS = {"daily": timedelta(hours=24), "weekly": timedelta(hours=168)}

# Sessions carrying any of these tags get no follow-up.
FOLLOWUP_BLOCKING_KINDS = (FOLLOWUP, WHATSAPP_LEAD, WEBHOOK, ALTEGIO)


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _customer_phone(db: Session, profile: Profile, session_id: str) -> Optional[str]:
    binding = (
        db.query(ChannelConversation)
        .filter(
            ChannelConversation.profile_id == profile.id,
            ChannelConversation.session_id == session_id,
            ChannelConversation.channel == WHATSAPP,
        )
        .first()
    )
    return binding.transport_address if binding else None


def _stale_sessions(db: Session, profile: Profile, now: datetime) -> list[tuple[str, datetime]]:
    hours = profile.whatsapp_followup_hours or 24
    cutoff = now - timedelta(hours=hours)
    earliest = now - timedelta(days=FOLLOWUP_LOOKBACK_DAYS)
    rows = (
        db.query(Message.session_id, func.max(Message.created_at).label("last_at"))
        .filter(Message.profile_id == profile.id, Message.role.in_(("user", "assistant")))
        .group_by(Message.session_id)
        .having(func.max(Message.created_at) < cutoff)
        .having(func.max(Message.created_at) > earliest)
        .all()
    )
    return [(row.session_id, _as_aware(row.last_at)) for row in rows]


def run_follow_ups(db: Session, now: Optional[datetime] = None) -> int:
    """Send one reminder to customers of stale sessions that produced no lead yet."""
    now = now or datetime.now(timezone.utc)
    sent = 0
    profiles = (
        db.query(Profile)
        .filter(Profile.is_active == True, Profile.whatsapp_followup_enabled == True)  # noqa: E712
        .all()
    )
    for profile in profiles:
        processed = 0
        for session_id, _last_at in _stale_sessions(db, profile, now):
            if processed >= FOLLOWUP_BATCH_LIMIT:
                break
            if any(has_marker(db, profile.id, session_id, kind) for kind in FOLLOWUP_BLOCKING_KINDS):
                continue
            phone = _customer_phone(db, profile, session_id)
            if not phone:
                continue
            processed += 1
            body = (
                f"Hi! This is {profile.display_name or profile.business_name}. "
                "You asked us a question recently. Is there anything else we can help you with?"
            )
            try:
                delivered = delivery_service.send_whatsapp(phone, body)
            except Exception as exc:
                logger.error(f"Follow-up send failed: {exc}", extra={"context": {"session_id": session_id}})
                delivered = False
            if delivered and append_marker(db, profile.id, session_id, FOLLOWUP, channel=WHATSAPP):
                sent += 1
    if sent:
        logger.info("Follow-ups sent", extra={"context": {"count": sent}})
    return sent


def build_activity_summary(db: Session, profile: Profile, since: datetime) -> dict:
    base = db.query(Message).filter(Message.profile_id == profile.id, Message.created_at >= since)
    sessions = (
        db.query(func.count(func.distinct(Message.session_id)))
        .filter(Message.profile_id == profile.id, Message.created_at >= since, Message.role == "user")
        .scalar()
        or 0
    )
    lead_tags = [f"[{MARKER_TAGS[kind]}]" for kind in (WHATSAPP_LEAD, WEBHOOK, ALTEGIO)]
    lead_sessions = {
        msg.session_id
        for msg in base.filter(Message.role == "system").all()
        if any(tag in msg.content for tag in lead_tags)
    }
    return {
        "sessions": sessions,
        "user_messages": base.filter(Message.role == "user").count(),
        "ai_messages": base.filter(Message.role == "assistant").count(),
        "leads": len(lead_sessions),
    }


def format_summary(profile: Profile, frequency: str, stats: dict) -> str:
    period = "today" if frequency == "daily" else "this week"
    return (
        f"*{profile.business_name}: activity {period}*\n\n"
        f"Conversations: {stats['sessions']}\n"
        f"Customer messages: {stats['user_messages']}\n"
        f"AI replies: {stats['ai_messages']}\n"
        f"Leads: {stats['leads']}"
    )


def run_periodic_summaries(db: Session, now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    sent = 0
    profiles = (
        db.query(Profile)
        .filter(Profile.is_active == True, Profile.whatsapp_summary_enabled == True)  # noqa: E712
        .all()
    )
    for profile in profiles:
        if not profile.whatsapp_number:
            continue
        frequency = profile.whatsapp_summary_frequency if profile.whatsapp_summary_frequency in SUMMARY_PERIODS else "daily"
        period = SUMMARY_PERIODS[frequency]
        last_sent = _as_aware(profile.whatsapp_summary_last_sent)
        if last_sent is not None and now - last_sent < period:
            continue

        stats = build_activity_summary(db, profile, now - period)
        if delivery_service.send_whatsapp(profile.whatsapp_number, format_summary(profile, frequency, stats)):
            profile.whatsapp_summary_last_sent = now
            db.commit()
            sent += 1
    return sent


def run_scheduled_jobs(db: Session, now: Optional[datetime] = None) -> dict:
    results = {}
    for name, job in (("follow_ups", run_follow_ups), ("summaries", run_periodic_summaries)):
        try:
            results[name] = job(db, now)
        except Exception as exc:
            db.rollback()
            logger.error(f"Scheduled job {name} failed: {exc}", exc_info=True)
            alert_error(f"Scheduled job {name} failed", {"error": str(exc)})
            results[name] = None
    return results
