import re
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Profile
from app.services.result import INVALID_URL, NO_PROFILE, Result
from app.services.security_service import WEBHOOK_URL_BLOCKED, log_security_event
from app.services.url_validation import OutboundURLError, validate_outbound_url

logger = get_logger("profile_service")

SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]{1,62}$")

# Fields an owner may change through the integrations endpoint.
INTEGRATION_FIELDS = (
    "webhook_url",
    "webhook_secret",
    "webhook_auto_send",
    "altegio_partner_token",
    "altegio_user_token",
    "altegio_company_id",
    "altegio_auto_send",
    "whatsapp_number",
    "whatsapp_auto_notify",
    "whatsapp_summary_enabled",
    "whatsapp_summary_frequency",
    "whatsapp_missed_alerts_enabled",
    "whatsapp_chat_enabled",
    "whatsapp_followup_enabled",
    "whatsapp_followup_hours",
    "whatsapp_appointment_confirm",
    "telegram_chat_enabled",
)


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")[:40]


def is_valid_slug(slug: str) -> bool:
    return bool(SLUG_RE.match(slug or ""))


def unique_slug(db: Session, raw: str) -> str:
    base = slugify(raw) or "business"
    slug = base
    suffix = 2
    while db.query(Profile.id).filter(Profile.slug == slug).first() is not None:
        slug = f"{base}-{suffix}"
        suffix += 1
    return slug


def get_owner_profile(db: Session, user_id: str) -> Optional[Profile]:
    return db.query(Profile).filter(Profile.user_id == user_id, Profile.is_active == True).first()  # noqa: E712


def get_public_profile(db: Session, slug: str) -> Optional[Profile]:
    return (
        db.query(Profile)
        .filter(Profile.slug == (slug or "").strip().lower(), Profile.is_active == True)  # noqa: E712
        .first()
    )


def update_integrations(db: Session, profile_id: UUID, changes: dict) -> Result[Profile]:
    """Apply integration settings; a webhook URL must pass the outbound URL check first."""
    profile = db.query(Profile).filter(Profile.id == profile_id).first()
    if profile is None:
        return Result.failure("Profile not found", NO_PROFILE)

    if changes.get("webhook_url"):
        try:
            changes["webhook_url"] = validate_outbound_url(changes["webhook_url"])
        except OutboundURLError as exc:
            log_security_event(WEBHOOK_URL_BLOCKED, {"profile_id": str(profile_id), "reason": str(exc)})
            return Result.failure(str(exc), INVALID_URL)

    for field, value in changes.items():
        if field in INTEGRATION_FIELDS:
            setattr(profile, field, value)
    db.commit()
    logger.info(
        "Integrations updated",
        extra={"context": {"profile_id": str(profile_id), "fields": sorted(k for k in changes if k in INTEGRATION_FIELDS)}},
    )
    return Result.success(profile)


def create_profile(
    db: Session,
    user_id: str,
    business_name: str,
    slug: Optional[str] = None,
    profession: str = "",
    knowledge_base: Optional[str] = None,
    theme_color: Optional[str] = None,
) -> Result[Profile]:
    """Onboarding create. An explicit slug must be free; otherwise one is derived."""
    if get_owner_profile(db, user_id) is not None:
        return Result.failure("Profile already exists for this user", "profile_exists")

    if slug:
        slug = slug.strip().lower()
        if not is_valid_slug(slug):
            return Result.failure("Invalid slug", "invalid_slug")
        if db.query(Profile.id).filter(Profile.slug == slug).first() is not None:
            return Result.failure("Slug already taken", "slug_taken")
    else:
        slug = unique_slug(db, business_name)

    profile = Profile(
        user_id=user_id,
        slug=slug,
        business_name=business_name.strip(),
        display_name=business_name.strip(),
        profession=(profession or "").strip(),
        knowledge_base=(knowledge_base or "").strip() or None,
        onboarding_complete=bool((knowledge_base or "").strip()),
    )
    if theme_color:
        profile.theme_color = theme_color
    db.add(profile)
    db.commit()
    db.refresh(profile)
    logger.info("Profile created", extra={"context": {"user_id": user_id, "slug": slug}})
    return Result.success(profile)


def find_profile_by_owner_number(db: Session, number: str) -> Optional[Profile]:
    """Active profile whose owner notification number matches the sender."""
    digits = "".join(ch for ch in (number or "") if ch.isdigit())
    if not digits:
        return None
    candidates = (
        db.query(Profile)
        .filter(Profile.is_active == True, Profile.whatsapp_number.isnot(None))  # noqa: E712
        .all()
    )
    for profile in candidates:
        if "".join(ch for ch in profile.whatsapp_number if ch.isdigit()) == digits:
            return profile
    return None
