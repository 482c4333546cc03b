"""Operator alerts delivered to a Telegram chat."""

import os
import threading
import time
from typing import Optional

import httpx

from app.logging_config import get_logger

logger = get_logger("alert_service")

ALERT_BOT_TOKEN = os.environ.get("ALERT_BOT_TOKEN")
ALERT_CHAT_ID = os.environ.get("ALERT_CHAT_ID")
ALERT_TIMEOUT_SECONDS = float(os.environ.get("ALERT_TIMEOUT_SECONDS", "10"))
SECURITY_ALERT_COOLDOWN_SECONDS = float(os.environ.get("SECURITY_ALERT_COOLDOWN_SECONDS", "300"))

_cooldowns: dict[str, float] = {}
_cooldown_lock = threading.Lock()


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to the operator Telegram chat.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict

    Returns:
        True if sent successfully
    """
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    emoji = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥", "SECURITY": "🛡"}

    text = f"{emoji.get(level, '📢')} *{level}*\n\n{message}"

    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"

    try:
        with httpx.Client(timeout=ALERT_TIMEOUT_SECONDS) as client:
            response = client.post(
                f"https://api.telegram.org/bot{ALERT_BOT_TOKEN}/sendMessage",
                json={"chat_id": ALERT_CHAT_ID, "text": text, "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for ERROR level alert."""
    return send_alert("ERROR", message, context)


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for CRITICAL level alert."""
    return send_alert("CRITICAL", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for WARNING level alert."""
    return send_alert("WARNING", message, context)


def _claim_cooldown(key: str, now: float) -> bool:
    with _cooldown_lock:
        last_sent = _cooldowns.get(key)
        if last_sent is not None and now - last_sent < SECURITY_ALERT_COOLDOWN_SECONDS:
            return False
        _cooldowns[key] = now
        return True


def send_security_alert(key: str, message: str, context: Optional[dict] = None) -> bool:
    """Send a SECURITY alert at most once per cooldown window for ``key``.

    Returns False when suppressed by the cooldown or when delivery failed.
    """
    if not _claim_cooldown(key, time.monotonic()):
        logger.info("Security alert suppressed by cooldown", extra={"context": {"key": key}})
        return False
    return send_alert("SECURITY", message, context)


def reset_alert_cooldowns() -> None:
    with _cooldown_lock:
        _cooldowns.clear()
