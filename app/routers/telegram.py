"""Customer-facing Telegram bot."""

import asyncio
import hmac
import json
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.schemas.telegram import TelegramUpdate, TelegramWebhookResponse
from app.services import identity_service, lead_service, telegram_service
from app.services.chat_service import CustomerTurn, handle_customer_turn
from app.services.identity_service import TELEGRAM

logger = get_logger("telegram_webhook")

router = APIRouter()

WELCOME_REPLY = "Hello! Ask me anything about our services and I'll be happy to help."
START_NOT_FOUND_REPLY = "Sorry, I couldn't find that business. Please check the link and try again."


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        return await request.json()
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            return json.loads(raw.decode(enc, errors="replace"))
        except ValueError:
            continue

    logger.error("Failed to decode Telegram webhook payload after fallbacks")
    return None


def _parse_start(text: str) -> tuple[bool, Optional[str]]:
    parts = text.strip().split(maxsplit=1)
    if not parts or parts[0].split("@", 1)[0] != "/start":
        return False, None
    slug = parts[1].strip().lower() if len(parts) > 1 else None
    return True, slug or None


def _send(service: Optional[telegram_service.TelegramService], chat_id: str, text: str) -> bool:
    if service is None:
        logger.warning("TELEGRAM_BOT_TOKEN not configured, reply dropped")
        return False
    return bool(service.send_message(chat_id, text).get("ok"))


def _process_message(
    db: Session, chat_id: str, text: str, language: Optional[str]
) -> tuple[str, Optional[CustomerTurn]]:
    service = telegram_service.get_telegram_service()

    is_start, slug = _parse_start(text)
    if is_start:
        identity = identity_service.reset_session(db, TELEGRAM, chat_id, explicit_slug=slug)
        if identity is None and slug:
            _send(service, chat_id, START_NOT_FOUND_REPLY)
            return "Unknown slug", None
        _send(service, chat_id, WELCOME_REPLY)
        return "Session started", None

    result = handle_customer_turn(db, TELEGRAM, chat_id, text, language=language)
    if not result.ok:
        if result.fallback_reply:
            _send(service, chat_id, result.fallback_reply)
        return result.error_code, None

    turn = result.value
    if _send(service, chat_id, turn.reply):
        identity_service.touch_outbound(db, TELEGRAM, chat_id, turn.profile_id)
    return "Replied", turn


@router.post("/telegram/webhook/{secret}", response_model=TelegramWebhookResponse)
async def telegram_webhook(
    secret: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    expected = telegram_service.webhook_secret_for(telegram_service.TELEGRAM_BOT_TOKEN)
    if not hmac.compare_digest(secret, expected):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

    body = await parse_telegram_update(request)
    if body is None:
        return TelegramWebhookResponse(success=False, message="Invalid telegram payload")

    try:
        update = TelegramUpdate(**body)
    except ValueError as e:
        logger.warning(f"Unexpected Telegram update shape: {e}")
        return TelegramWebhookResponse(success=False, message="Invalid telegram payload")

    message = update.message
    if message is None or not message.text:
        return TelegramWebhookResponse(success=True, message="No actionable content")
    if message.from_user and message.from_user.is_bot:
        return TelegramWebhookResponse(success=True, message="Ignoring bot message")

    chat_id = str(message.chat.id)
    language = message.from_user.language_code if message.from_user else None

    # LLM, database and Bot API calls are blocking; keep them off the event loop.
    outcome, turn = await asyncio.to_thread(_process_message, db, chat_id, message.text, language)
    if turn is not None:
        background_tasks.add_task(
            lead_service.dispatch_lead_events_task,
            turn.profile_id,
            turn.session_id,
            turn.customer_text,
            turn.reply,
        )
    return TelegramWebhookResponse(success=True, message=outcome)
