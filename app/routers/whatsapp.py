"""Inbound WhatsApp messages delivered by Twilio."""

import asyncio
import os
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.services import delivery_service, identity_service, lead_service, profile_service
from app.services.chat_service import CustomerTurn, handle_customer_turn
from app.services.identity_service import WHATSAPP
from app.services.security_service import TWILIO_SIGNATURE_INVALID, log_security_event

logger = get_logger("whatsapp_webhook")

router = APIRouter()

# Public URL Twilio signs; needed when running behind a proxy that rewrites the host.
TWILIO_WEBHOOK_URL = os.environ.get("TWILIO_WEBHOOK_URL")

EMPTY_TWIML = "<Response></Response>"


def _twiml() -> Response:
    return Response(content=EMPTY_TWIML, media_type="application/xml")


def _process_inbound(db: Session, sender: str, body: str) -> Optional[CustomerTurn]:
    """Answer one inbound message. Returns the turn when lead dispatch should follow."""
    # The owner answering a lead notification from their own phone.
    owner_profile = profile_service.find_profile_by_owner_number(db, sender)
    if owner_profile is not None:
        session_id = lead_service.record_owner_reply(db, owner_profile, body)
        logger.info(
            "Owner WhatsApp reply recorded",
            extra={"context": {"profile_id": str(owner_profile.id), "session_id": session_id}},
        )
        return None

    result = handle_customer_turn(db, WHATSAPP, sender, body)
    if not result.ok:
        if result.fallback_reply:
            delivery_service.send_whatsapp(sender, result.fallback_reply)
        return None

    turn = result.value
    if delivery_service.send_whatsapp(sender, turn.reply):
        identity_service.touch_outbound(db, WHATSAPP, sender, turn.profile_id)
    return turn


@router.post("/whatsapp/webhook")
async def whatsapp_webhook(request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    signature = request.headers.get("X-Twilio-Signature")
    url = TWILIO_WEBHOOK_URL or str(request.url)
    if not delivery_service.validate_twilio_signature(url, params, signature):
        log_security_event(TWILIO_SIGNATURE_INVALID, {"from": params.get("From")})
        return Response(status_code=status.HTTP_403_FORBIDDEN)

    sender = params.get("From", "")
    body = (params.get("Body") or "").strip()
    if not sender or not body:
        return _twiml()

    # LLM, database and Twilio calls are blocking; keep them off the event loop.
    turn = await asyncio.to_thread(_process_inbound, db, sender, body)
    if turn is not None:
        background_tasks.add_task(
            lead_service.dispatch_lead_events_task,
            turn.profile_id,
            turn.session_id,
            turn.customer_text,
            turn.reply,
        )
    return _twiml()
