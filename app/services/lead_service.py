"""Lead detection and at-most-once side effects per session.

The transcript is the ledger: after an external push succeeds, a system
message tagged ``[<kind-tag>] ...`` is appended, and every later attempt for
that kind in that session is skipped. A unique index on
(profile_id, session_id, marker) rejects a second marker row if two workers
race past the check; the external push itself may still have happened twice
in that case (at-least-once delivery).
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.logging_config import get_logger
from app.models import Message, Profile
from app.services import delivery_service
from app.services.ai_service import extract_json
from app.services.message_service import (
    count_user_messages,
    format_transcript,
    get_session_messages,
    save_message,
)

logger = get_logger("lead_service")

WHATSAPP = "whatsapp"
WEBHOOK = "webhook"
ALTEGIO = "altegio"
FOLLOWUP = "followup"
MISSED_ALERT = "missed-alert"
APPOINTMENT = "appointment"

MARKER_TAGS = {
    WHATSAPP: "whatsapp-sent",
    WEBHOOK: "webhook-sent",
    ALTEGIO: "altegio-sent",
    FOLLOWUP: "followup-sent",
    MISSED_ALERT: "missed-alert",
    APPOINTMENT: "appointment-confirmed",
}
LEAD_KINDS = (WHATSAPP, WEBHOOK, ALTEGIO)
OWNER_REPLY_TAG = "owner-reply"

MIN_USER_MESSAGES = 2

PHONE_SIGNAL_RE = re.compile(r"(\+?\d[\d\s\-()]{7,})|(\b\d{10,}\b)")
EMAIL_SIGNAL_RE = re.compile(r"[\w.-]+@[\w.-]+\.\w+")

BOOKING_RE = re.compile(
    r"\b(book|booking|appointment|schedule|reserve|reservation|randevu|qeydiyyat|zapis|запис\w*|бронь|kayit)\b",
    re.IGNORECASE,
)

# Assistant replies that mean the knowledge base had no answer.
MISSED_ANSWER_RE = re.compile(
    r"(don't have (?:that|this|any) information|do not have (?:that|this) information|"
    r"not sure about that|contact the business directly|"
    r"нет такой информации|нет информации|bu barədə məlumatım yoxdur|məlumatım yoxdur)",
    re.IGNORECASE,
)

EXTRACTION_PROMPT = (
    "Extract the client's contact information from this conversation. "
    'Return ONLY valid JSON: {"name":"","phone":"","email":"","comment":""}. '
    "comment is one short sentence about what the client wants. Use empty strings for unknown fields."
)


@dataclass
class LeadContact:
    name: str = ""
    phone: str = ""
    email: str = ""
    comment: str = ""


def marker_content(kind: str, detail: str = "") -> str:
    return f"[{MARKER_TAGS[kind]}] {detail}".strip()


def has_marker(db: Session, profile_id: UUID, session_id: str, kind: str) -> bool:
    tag = f"[{MARKER_TAGS[kind]}]"
    existing = (
        db.query(Message.id)
        .filter(
            Message.profile_id == profile_id,
            Message.session_id == session_id,
            Message.role == "system",
            (Message.marker == kind) | Message.content.contains(tag),
        )
        .first()
    )
    return existing is not None


def append_marker(db: Session, profile_id: UUID, session_id: str, kind: str, detail: str = "", channel: str = "web") -> bool:
    """Write the idempotency marker. False if another writer got there first."""
    try:
        save_message(
            db,
            profile_id,
            session_id,
            role="system",
            content=marker_content(kind, detail),
            channel=channel,
            content_type="system",
            marker=kind,
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(
            "Marker already present",
            extra={"context": {"session_id": session_id, "kind": kind}},
        )
        return False
    return True


def has_contact_signal(text: str) -> bool:
    if not text:
        return False
    return bool(PHONE_SIGNAL_RE.search(text) or EMAIL_SIGNAL_RE.search(text))


def extract_contact(transcript: str) -> Optional[LeadContact]:
    payload = extract_json(EXTRACTION_PROMPT, transcript, stage="lead_extract")
    if payload is None:
        return None

    def _field(name: str) -> str:
        value = payload.get(name)
        return value.strip() if isinstance(value, str) else ""

    contact = LeadContact(name=_field("name"), phone=_field("phone"), email=_field("email"), comment=_field("comment"))
    if not contact.phone and not contact.email:
        return None
    return contact


def _kind_enabled(profile: Profile, kind: str) -> bool:
    if kind == WHATSAPP:
        return bool(profile.whatsapp_auto_notify and profile.whatsapp_number)
    if kind == WEBHOOK:
        return bool(profile.webhook_auto_send and profile.webhook_url)
    if kind == ALTEGIO:
        return bool(
            profile.altegio_auto_send
            and profile.altegio_company_id
            and profile.altegio_partner_token
            and profile.altegio_user_token
        )
    if kind == MISSED_ALERT:
        return bool(profile.whatsapp_missed_alerts_enabled and profile.whatsapp_number)
    if kind == APPOINTMENT:
        return bool(profile.whatsapp_appointment_confirm)
    if kind == FOLLOWUP:
        return bool(profile.whatsapp_followup_enabled)
    return False


def _session_channel(messages: list[Message]) -> str:
    for msg in messages:
        if msg.role == "user":
            return msg.channel
    return "web"


def format_lead_notification(profile: Profile, contact: LeadContact, source: str) -> str:
    lines = [f"*New Lead — {profile.business_name}*", ""]
    lines.append(f"Name: {contact.name or '-'}")
    lines.append(f"Phone: {contact.phone or '-'}")
    if contact.email:
        lines.append(f"Email: {contact.email}")
    if contact.comment:
        lines.append(f"Comment: {contact.comment}")
    lines.append(f"Source: {source}")
    return "\n".join(lines)


def _push(kind: str, profile: Profile, contact: LeadContact, session_id: str, source: str) -> bool:
    if kind == WHATSAPP:
        return delivery_service.send_whatsapp(profile.whatsapp_number, format_lead_notification(profile, contact, source))
    if kind == WEBHOOK:
        payload = {
            "event": "lead.created",
            "profile_id": str(profile.id),
            "slug": profile.slug,
            "session_id": session_id,
            "source": source,
            "name": contact.name,
            "phone": contact.phone,
            "email": contact.email,
            "comment": contact.comment,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        return delivery_service.post_webhook(profile.webhook_url, payload, profile.webhook_secret)
    if kind == ALTEGIO:
        if not contact.phone:
            return False
        return delivery_service.push_altegio_client(
            profile.altegio_company_id,
            profile.altegio_partner_token,
            profile.altegio_user_token,
            contact.name,
            contact.phone,
            contact.email,
            contact.comment,
        )
    raise ValueError(f"Not a lead kind: {kind}")


def _session_transcript(messages: list[Message], pending_text: Optional[str]) -> str:
    transcript = format_transcript(messages)
    # Stored turns are redacted; their contact spans are kept aside per message.
    contacts = [msg.contact_raw for msg in messages if msg.role == "user" and msg.contact_raw]
    if contacts:
        details = "; ".join(c.replace("\n", "; ") for c in contacts)
        transcript = f"{transcript}\nClient contact details: {details}".strip()
    if pending_text:
        transcript = f"{transcript}\nClient: {pending_text}".strip()
    return transcript


def _cached_contact(transcript: str, contact_cache: Optional[dict]) -> Optional[LeadContact]:
    if contact_cache is not None and "contact" in contact_cache:
        return contact_cache["contact"]
    contact = extract_contact(transcript)
    if contact_cache is not None:
        contact_cache["contact"] = contact
    return contact


def maybe_notify(
    db: Session,
    profile_id: UUID,
    session_id: str,
    kind: str,
    pending_text: Optional[str] = None,
    contact_cache: Optional[dict] = None,
) -> bool:
    """Fire one lead notification of ``kind`` for the session if due. Returns True if it fired."""
    if kind not in LEAD_KINDS:
        raise ValueError(f"Not a lead kind: {kind}")

    profile = db.query(Profile).filter(Profile.id == profile_id).first()
    if profile is None or not _kind_enabled(profile, kind):
        return False
    if has_marker(db, profile_id, session_id, kind):
        return False
    if count_user_messages(db, profile_id, session_id) < MIN_USER_MESSAGES:
        return False

    messages = get_session_messages(db, profile_id, session_id)
    transcript = _session_transcript(messages, pending_text)
    if not has_contact_signal(transcript):
        return False

    contact = _cached_contact(transcript, contact_cache)
    if contact is None:
        logger.info("Lead extraction gave no contact, will retry on next message", extra={"context": {"session_id": session_id, "kind": kind}})
        return False

    source = _session_channel(messages)
    try:
        delivered = _push(kind, profile, contact, session_id, source)
    except Exception as exc:
        logger.error(f"Lead push failed: {exc}", extra={"context": {"session_id": session_id, "kind": kind}})
        delivered = False
    if not delivered:
        return False

    fired = append_marker(db, profile_id, session_id, kind, f"{contact.name} {contact.phone}".strip(), channel=source)
    if fired:
        logger.info("Lead notification sent", extra={"context": {"session_id": session_id, "kind": kind, "source": source}})
    return fired


def maybe_send_missed_alert(
    db: Session,
    profile: Profile,
    session_id: str,
    question: Optional[str],
    reply: Optional[str],
) -> bool:
    """Tell the owner once per session that the assistant could not answer."""
    if not _kind_enabled(profile, MISSED_ALERT) or not reply or not MISSED_ANSWER_RE.search(reply):
        return False
    if has_marker(db, profile.id, session_id, MISSED_ALERT):
        return False

    body = (
        f"⚠️ *Missed question — {profile.business_name}*\n\n"
        f"A customer asked: \"{(question or '').strip()[:300]}\"\n"
        "Your assistant had no answer. Consider adding this to your knowledge base."
    )
    if not delivery_service.send_whatsapp(profile.whatsapp_number, body):
        return False
    return append_marker(db, profile.id, session_id, MISSED_ALERT)


def maybe_confirm_appointment(
    db: Session,
    profile: Profile,
    session_id: str,
    pending_text: Optional[str],
    contact_cache: Optional[dict] = None,
) -> bool:
    """Send the customer a booking acknowledgement once per session."""
    if not _kind_enabled(profile, APPOINTMENT):
        return False
    if has_marker(db, profile.id, session_id, APPOINTMENT):
        return False

    messages = get_session_messages(db, profile.id, session_id)
    transcript = _session_transcript(messages, pending_text)
    if not BOOKING_RE.search(transcript) or not has_contact_signal(transcript):
        return False

    contact = _cached_contact(transcript, contact_cache)
    if contact is None or not contact.phone:
        return False

    greeting = f"Hi {contact.name}!" if contact.name else "Hi!"
    body = (
        f"{greeting} Thank you for your booking request with {profile.business_name}. "
        "We have received it and will contact you shortly to confirm the time."
    )
    if not delivery_service.send_whatsapp(contact.phone, body):
        return False
    return append_marker(db, profile.id, session_id, APPOINTMENT, f"{contact.name} {contact.phone}".strip())


def dispatch_lead_events(
    db: Session,
    profile_id: UUID,
    session_id: str,
    pending_text: Optional[str] = None,
    reply: Optional[str] = None,
) -> dict:
    """Run every enabled post-turn side effect. Failures are logged, never raised."""
    results: dict = {}
    profile = db.query(Profile).filter(Profile.id == profile_id).first()
    if profile is None:
        return results

    contact_cache: dict = {}
    for kind in LEAD_KINDS:
        if not _kind_enabled(profile, kind):
            continue
        try:
            results[kind] = maybe_notify(db, profile_id, session_id, kind, pending_text, contact_cache)
        except Exception as exc:
            db.rollback()
            logger.error(f"Lead dispatch failed: {exc}", extra={"context": {"session_id": session_id, "kind": kind}})
            results[kind] = False

    for kind, handler in (
        (MISSED_ALERT, lambda: maybe_send_missed_alert(db, profile, session_id, pending_text, reply)),
        (APPOINTMENT, lambda: maybe_confirm_appointment(db, profile, session_id, pending_text, contact_cache)),
    ):
        if not _kind_enabled(profile, kind):
            continue
        try:
            results[kind] = handler()
        except Exception as exc:
            db.rollback()
            logger.error(f"Lead dispatch failed: {exc}", extra={"context": {"session_id": session_id, "kind": kind}})
            results[kind] = False

    return results


def dispatch_lead_events_task(
    profile_id: UUID,
    session_id: str,
    pending_text: Optional[str] = None,
    reply: Optional[str] = None,
) -> None:
    """Background-task entry point with its own DB session."""
    db = SessionLocal()
    try:
        results = dispatch_lead_events(db, profile_id, session_id, pending_text, reply)
        if results:
            logger.info("Lead dispatch finished", extra={"context": {"session_id": session_id, "results": results}})
    except Exception as exc:
        logger.error(f"Lead dispatch task failed: {exc}", exc_info=True)
    finally:
        db.close()


def record_owner_reply(db: Session, profile: Profile, body: str) -> Optional[str]:
    """Attach an owner's WhatsApp reply to the most recently notified lead session."""
    latest = (
        db.query(Message)
        .filter(
            Message.profile_id == profile.id,
            Message.role == "system",
            Message.content.contains(f"[{MARKER_TAGS[WHATSAPP]}]"),
        )
        .order_by(Message.created_at.desc())
        .first()
    )
    if latest is None:
        return None
    save_message(
        db,
        profile.id,
        latest.session_id,
        role="owner",
        content=f"[{OWNER_REPLY_TAG}] {body}",
        channel="whatsapp",
    )
    db.commit()
    return latest.session_id
