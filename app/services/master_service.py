"""Master verification: secret phrase check and short-lived capability tokens."""

import base64
import hashlib
import hmac
import os
import time
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Profile

logger = get_logger("master_service")

MASTER_SECRET_PHRASE = os.environ.get("MASTER_SECRET_PHRASE", "")
MASTER_TOKEN_SECRET = os.environ.get("MASTER_TOKEN_SECRET", "")
MASTER_TOKEN_TTL_SECONDS = int(os.environ.get("MASTER_TOKEN_TTL_SECONDS", "3600"))


def _signing_key() -> bytes:
    # Falls back to the secret phrase when MASTER_TOKEN_SECRET is unset.
    return (MASTER_TOKEN_SECRET or MASTER_SECRET_PHRASE).encode("utf-8")


def verify_secret_phrase(phrase: Optional[str]) -> bool:
    if not MASTER_SECRET_PHRASE or not phrase:
        return False
    return hmac.compare_digest(phrase.strip().encode("utf-8"), MASTER_SECRET_PHRASE.encode("utf-8"))


def _sign(payload: str) -> str:
    digest = hmac.new(_signing_key(), payload.encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def issue_master_token(profile_id: UUID, now: Optional[float] = None) -> str:
    """Capability token ``<profile_id>.<expires>.<sig>`` valid for MASTER_TOKEN_TTL_SECONDS."""
    issued_at = time.time() if now is None else now
    expires = int(issued_at + MASTER_TOKEN_TTL_SECONDS)
    payload = f"{profile_id}.{expires}"
    return f"{payload}.{_sign(payload)}"


def check_master_token(token: Optional[str], profile_id: UUID, now: Optional[float] = None) -> bool:
    if not token or not _signing_key():
        return False
    try:
        token_profile_id, expires_raw, signature = token.split(".")
        expires = int(expires_raw)
    except ValueError:
        return False

    expected = _sign(f"{token_profile_id}.{expires_raw}")
    if not hmac.compare_digest(signature, expected):
        return False
    if token_profile_id != str(profile_id):
        return False
    current = time.time() if now is None else now
    return current < expires


def is_verified_master(profile: Optional[Profile], token: Optional[str]) -> bool:
    """Profile is the active master and holds an unexpired token issued to it."""
    if profile is None or not profile.is_master or not profile.is_active:
        return False
    return check_master_token(token, profile.id)


def promote_master(db: Session, profile_id: UUID) -> Optional[Profile]:
    """Make one profile the master, clearing the flag everywhere else."""
    profile = db.query(Profile).filter(Profile.id == profile_id).first()
    if profile is None:
        return None
    db.query(Profile).filter(Profile.id != profile_id, Profile.is_master == True).update(  # noqa: E712
        {Profile.is_master: False}, synchronize_session=False
    )
    db.flush()
    profile.is_master = True
    db.commit()
    logger.info("Master profile set", extra={"context": {"profile_id": str(profile_id)}})
    return profile
