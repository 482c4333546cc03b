"""Outbound delivery: WhatsApp via Twilio, signed webhooks, Altegio CRM."""

import base64
import hashlib
import hmac
import json
import os
from typing import Mapping, Optional

import httpx

from app.logging_config import get_logger
from app.services.alert_service import alert_critical
from app.services.url_validation import OutboundURLError, validate_outbound_url

logger = get_logger("delivery_service")

TWILIO_ACCOUNT_SID = os.environ.get("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.environ.get("TWILIO_AUTH_TOKEN")
TWILIO_WHATSAPP_FROM = os.environ.get("TWILIO_WHATSAPP_FROM", "")
TWILIO_API_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
TWILIO_TIMEOUT_SECONDS = float(os.environ.get("TWILIO_TIMEOUT_SECONDS", "15"))

# Country-code prefixes we are allowed to message (comma separated digits).
WHATSAPP_ALLOWED_PREFIXES = os.environ.get("WHATSAPP_ALLOWED_PREFIXES", "994")

WEBHOOK_TIMEOUT_SECONDS = float(os.environ.get("WEBHOOK_TIMEOUT_SECONDS", "10"))
WEBHOOK_SIGNATURE_HEADER = "X-Signature"

ALTEGIO_API_URL = os.environ.get("ALTEGIO_API_URL", "https://api.alteg.io/api/v1")
ALTEGIO_TIMEOUT_SECONDS = float(os.environ.get("ALTEGIO_TIMEOUT_SECONDS", "10"))


def normalize_phone(number: Optional[str]) -> str:
    return "".join(ch for ch in (number or "") if ch.isdigit())


def _allowed_prefixes() -> list[str]:
    return [p.strip().lstrip("+") for p in WHATSAPP_ALLOWED_PREFIXES.split(",") if p.strip()]


def is_destination_allowed(number: Optional[str]) -> bool:
    digits = normalize_phone(number)
    if not digits:
        return False
    return any(digits.startswith(prefix) for prefix in _allowed_prefixes())


def send_whatsapp(to: str, body: str) -> bool:
    """Send a WhatsApp text through Twilio. False on geofence refusal or any failure."""
    if not TWILIO_ACCOUNT_SID or not TWILIO_AUTH_TOKEN or not TWILIO_WHATSAPP_FROM:
        logger.warning("Twilio is not configured, WhatsApp message skipped")
        return False
    if not body:
        return False

    digits = normalize_phone(to)
    if not is_destination_allowed(digits):
        logger.warning(
            "WhatsApp destination outside allowed prefixes",
            extra={"context": {"to_prefix": digits[:4], "allowed": _allowed_prefixes()}},
        )
        return False

    from_number = TWILIO_WHATSAPP_FROM
    if not from_number.startswith("whatsapp:"):
        from_number = f"whatsapp:{from_number}"

    try:
        with httpx.Client(timeout=TWILIO_TIMEOUT_SECONDS) as client:
            response = client.post(
                TWILIO_API_URL.format(sid=TWILIO_ACCOUNT_SID),
                auth=(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN),
                data={"To": f"whatsapp:+{digits}", "From": from_number, "Body": body},
            )
    except httpx.TimeoutException as exc:
        logger.error(f"Twilio send timed out after {TWILIO_TIMEOUT_SECONDS}s: {exc}")
        return False
    except Exception as exc:
        logger.error(f"Twilio send failed: {exc}")
        alert_critical("WhatsApp send failed", {"to_prefix": digits[:4], "error": str(exc)})
        return False

    if response.status_code not in (200, 201):
        logger.error(f"Twilio error: {response.status_code} {response.text[:200]}")
        return False
    return True


def compute_twilio_signature(url: str, params: Mapping[str, str], auth_token: str) -> str:
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def validate_twilio_signature(url: str, params: Mapping[str, str], signature: Optional[str]) -> bool:
    """Check X-Twilio-Signature. Skipped (True) when no auth token is configured."""
    if not TWILIO_AUTH_TOKEN:
        return True
    if not signature:
        return False
    expected = compute_twilio_signature(url, params, TWILIO_AUTH_TOKEN)
    return hmac.compare_digest(expected, signature)


def sign_payload(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def post_webhook(url: str, payload: dict, secret: Optional[str] = None) -> bool:
    """POST JSON to a tenant webhook. The URL is re-validated right before the call."""
    try:
        safe_url = validate_outbound_url(url)
    except OutboundURLError as exc:
        logger.warning("Webhook URL rejected", extra={"context": {"error": str(exc)}})
        return False

    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if secret:
        headers[WEBHOOK_SIGNATURE_HEADER] = sign_payload(body, secret)

    try:
        with httpx.Client(timeout=WEBHOOK_TIMEOUT_SECONDS, follow_redirects=False) as client:
            response = client.post(safe_url, content=body, headers=headers)
    except httpx.TimeoutException as exc:
        logger.error(f"Webhook timed out after {WEBHOOK_TIMEOUT_SECONDS}s: {exc}")
        return False
    except Exception as exc:
        logger.error(f"Webhook delivery failed: {exc}")
        return False

    if response.status_code >= 300:
        logger.warning(f"Webhook returned {response.status_code}")
        return False
    return True


def push_altegio_client(
    company_id: str,
    partner_token: str,
    user_token: str,
    name: str,
    phone: str,
    email: Optional[str] = None,
    comment: Optional[str] = None,
) -> bool:
    """Create a client card in Altegio."""
    payload = {"name": name or "Client", "phone": normalize_phone(phone)}
    if email:
        payload["email"] = email
    if comment:
        payload["comment"] = comment

    try:
        with httpx.Client(timeout=ALTEGIO_TIMEOUT_SECONDS) as client:
            response = client.post(
                f"{ALTEGIO_API_URL}/clients/{company_id}",
                headers={
                    "Authorization": f"Bearer {partner_token}, User {user_token}",
                    "Accept": "application/vnd.api.v2+json",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
    except httpx.TimeoutException as exc:
        logger.error(f"Altegio timed out after {ALTEGIO_TIMEOUT_SECONDS}s: {exc}")
        return False
    except Exception as exc:
        logger.error(f"Altegio push failed: {exc}")
        return False

    if response.status_code not in (200, 201):
        logger.warning(f"Altegio returned {response.status_code}: {response.text[:200]}")
        return False
    return True
