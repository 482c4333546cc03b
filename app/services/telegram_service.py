import hashlib
import os
from typing import Optional

import httpx

from app.logging_config import get_logger

logger = get_logger("telegram_service")

TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN")
TELEGRAM_TIMEOUT_SECONDS = float(os.environ.get("TELEGRAM_TIMEOUT_SECONDS", "10"))
# Public base URL of this API; when set, the bot webhook is registered at startup.
TELEGRAM_WEBHOOK_BASE_URL = os.environ.get("TELEGRAM_WEBHOOK_BASE_URL")


def webhook_secret_for(bot_token: Optional[str]) -> str:
    """Path secret for the bot webhook URL, derived from the token."""
    return hashlib.sha256((bot_token or "").encode("utf-8")).hexdigest()[:32]


class TelegramService:
    """Thin Bot API client for the customer-facing Telegram channel."""

    BASE_URL = "https://api.telegram.org/bot{token}"

    def __init__(self, bot_token: str):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)

    def _make_request(self, method: str, data: Optional[dict] = None) -> dict:
        url = f"{self.base_url}/{method}"
        try:
            with httpx.Client(timeout=TELEGRAM_TIMEOUT_SECONDS) as client:
                response = client.post(url, json=data or {})
                return response.json()
        except Exception as e:
            logger.error(f"Telegram API error: {e}")
            return {"ok": False, "error": str(e)}

    def send_message(self, chat_id: str, text: str, parse_mode: Optional[str] = "Markdown") -> dict:
        data = {"chat_id": chat_id, "text": text}
        if parse_mode:
            data["parse_mode"] = parse_mode
        result = self._make_request("sendMessage", data)
        if not result.get("ok") and parse_mode:
            # Model output is not always valid Markdown; retry as plain text.
            logger.warning(f"Telegram rejected formatted message: {result.get('description') or result.get('error')}")
            result = self._make_request("sendMessage", {"chat_id": chat_id, "text": text})
        return result

    def set_webhook(self, url: str) -> dict:
        return self._make_request("setWebhook", {"url": url, "allowed_updates": ["message"]})


def get_telegram_service() -> Optional[TelegramService]:
    if not TELEGRAM_BOT_TOKEN:
        return None
    return TelegramService(TELEGRAM_BOT_TOKEN)


def register_webhook(base_url: Optional[str] = None) -> bool:
    """Point the bot at /telegram/webhook/<secret> under ``base_url``."""
    base_url = (base_url or TELEGRAM_WEBHOOK_BASE_URL or "").rstrip("/")
    service = get_telegram_service()
    if service is None or not base_url:
        return False
    url = f"{base_url}/telegram/webhook/{webhook_secret_for(TELEGRAM_BOT_TOKEN)}"
    result = service.set_webhook(url)
    if not result.get("ok"):
        logger.error(f"Telegram setWebhook failed: {result.get('description') or result.get('error')}")
        return False
    logger.info("Telegram webhook registered", extra={"context": {"base_url": base_url}})
    return True
