"""Tiered knowledge store (public KB, private vault, platform-global) and KB translation."""

import os
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import GLOBAL_KNOWLEDGE_ID, GlobalKnowledge, Profile
from app.services.llm import GEMINI_OPENAI_CHAT_URL, LLMProvider, OpenAIProvider, build_messages
from app.services.result import NO_PROFILE, TRANSLATION_FAILED, Result

logger = get_logger("knowledge_service")

PUBLIC = "public"
PRIVATE = "private"
TIERS = (PUBLIC, PRIVATE)

SOURCE_LANGUAGE = "az"
RUSSIAN_LANGUAGES = {"ru"}
# No dedicated variant exists for these; the English one is closest.
ENGLISH_FAMILY_LANGUAGES = {"en", "es", "fr", "tr"}

LANGUAGE_NAMES = {
    "az": "Azerbaijani",
    "ru": "Russian",
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "tr": "Turkish",
}

FALLBACK_REPLIES = {
    "az": "Bağışlayın, yenidən cəhd edin.",
    "ru": "Извините, попробуйте снова.",
    "en": "Sorry, please try again.",
    "es": "Lo siento, inténtelo de nuevo.",
    "fr": "Désolé, veuillez réessayer.",
    "tr": "Üzgünüm, tekrar deneyin.",
}

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY")
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
TRANSLATE_PRIMARY_MODEL = os.environ.get("TRANSLATE_PRIMARY_MODEL", "gemini-2.0-flash")
TRANSLATE_FALLBACK_MODEL = os.environ.get("TRANSLATE_FALLBACK_MODEL", "gpt-5-mini")
TRANSLATE_TIMEOUT_SECONDS = float(os.environ.get("TRANSLATE_TIMEOUT_SECONDS", "15"))
TRANSLATE_MAX_TOKENS = int(os.environ.get("TRANSLATE_MAX_TOKENS", "4000"))


class TranslationError(Exception):
    """Both translation backends failed."""


def normalize_language(language: Optional[str]) -> str:
    if not language:
        return SOURCE_LANGUAGE
    return language.strip().lower().replace("_", "-").split("-")[0] or SOURCE_LANGUAGE


def language_instruction(language: Optional[str]) -> str:
    code = normalize_language(language)
    return f"Respond in {LANGUAGE_NAMES.get(code, LANGUAGE_NAMES['en'])}."


def fallback_reply(language: Optional[str]) -> str:
    return FALLBACK_REPLIES.get(normalize_language(language), FALLBACK_REPLIES["en"])


def _present(text: Optional[str]) -> Optional[str]:
    if text is None or not text.strip():
        return None
    return text


def select_public_knowledge(profile: Profile, language: Optional[str]) -> Optional[str]:
    """Pick the closest localized public KB: ru variant, English-family variant, else base."""
    code = normalize_language(language)
    if code in RUSSIAN_LANGUAGES and _present(profile.knowledge_base_ru):
        return profile.knowledge_base_ru
    if code in ENGLISH_FAMILY_LANGUAGES and _present(profile.knowledge_base_en):
        return profile.knowledge_base_en
    return _present(profile.knowledge_base)


def select_profession(profile: Profile, language: Optional[str]) -> str:
    code = normalize_language(language)
    if code in RUSSIAN_LANGUAGES and _present(profile.profession_ru):
        return profile.profession_ru
    if code in ENGLISH_FAMILY_LANGUAGES and _present(profile.profession_en):
        return profile.profession_en
    return profile.profession or ""


def _get_profile(db: Session, profile_id: UUID) -> Optional[Profile]:
    return db.query(Profile).filter(Profile.id == profile_id).first()


def get_tier(db: Session, profile_id: UUID, tier: str, language: Optional[str] = None) -> Optional[str]:
    if tier not in TIERS:
        raise ValueError(f"Unknown knowledge tier: {tier}")
    profile = _get_profile(db, profile_id)
    if not profile:
        return None
    if tier == PRIVATE:
        return _present(profile.private_vault)
    return select_public_knowledge(profile, language)


def set_tier(db: Session, profile_id: UUID, tier: str, text: str) -> None:
    """Overwrite one tier in a single committed row update."""
    if tier not in TIERS:
        raise ValueError(f"Unknown knowledge tier: {tier}")
    profile = _get_profile(db, profile_id)
    if not profile:
        raise LookupError(f"Profile {profile_id} not found")

    if tier == PUBLIC:
        profile.knowledge_base = text
        # Variants are regenerated by translate_profile; until then replies use the fresh base.
        profile.knowledge_base_ru = None
        profile.knowledge_base_en = None
    else:
        profile.private_vault = text
    profile.updated_at = datetime.now(timezone.utc)
    db.commit()
    logger.info(
        "Knowledge tier updated",
        extra={"context": {"profile_id": str(profile_id), "tier": tier, "chars": len(text or "")}},
    )


def get_global(db: Session) -> Optional[str]:
    row = db.query(GlobalKnowledge).filter(GlobalKnowledge.id == GLOBAL_KNOWLEDGE_ID).first()
    return _present(row.content) if row else None


def set_global(db: Session, text: str, author_profile_id: UUID) -> None:
    row = db.query(GlobalKnowledge).filter(GlobalKnowledge.id == GLOBAL_KNOWLEDGE_ID).first()
    if row is None:
        row = GlobalKnowledge(id=GLOBAL_KNOWLEDGE_ID)
        db.add(row)
    row.content = text
    row.updated_by = author_profile_id
    row.updated_at = datetime.now(timezone.utc)
    db.commit()
    logger.info(
        "Global knowledge updated",
        extra={"context": {"author_profile_id": str(author_profile_id), "chars": len(text or "")}},
    )


# --- Translation ---

_translation_providers: Optional[list[LLMProvider]] = None


def get_translation_providers() -> list[LLMProvider]:
    """Primary (Gemini) then secondary (OpenAI) translation backends."""
    global _translation_providers
    if _translation_providers is None:
        _translation_providers = [
            OpenAIProvider(
                api_key=GEMINI_API_KEY,
                default_model=TRANSLATE_PRIMARY_MODEL,
                base_url=GEMINI_OPENAI_CHAT_URL,
                token_param="max_tokens",
                name="gemini",
            ),
            OpenAIProvider(api_key=OPENAI_API_KEY, default_model=TRANSLATE_FALLBACK_MODEL, name="openai"),
        ]
    return _translation_providers


def _translation_prompt(target_language: str) -> str:
    source = LANGUAGE_NAMES[SOURCE_LANGUAGE]
    target = LANGUAGE_NAMES.get(target_language, target_language)
    return (
        f"Translate the following text from {source} to {target}. "
        "Keep the formatting, line breaks, prices and proper names as they are. "
        "Return ONLY the translation, with no comments."
    )


def translate_text(text: str, target_language: str) -> str:
    """Translate base-language text, falling back to the secondary backend on error."""
    messages = build_messages(_translation_prompt(target_language), [], text)
    errors = []
    for provider in get_translation_providers():
        try:
            response = provider.generate(
                messages,
                temperature=0.2,
                max_tokens=TRANSLATE_MAX_TOKENS,
                timeout_seconds=TRANSLATE_TIMEOUT_SECONDS,
            )
        except Exception as exc:
            logger.warning(
                "Translation backend failed",
                extra={"context": {"backend": provider.name, "target": target_language, "error": str(exc)}},
            )
            errors.append(f"{provider.name}: {exc}")
            continue
        translated = (response.content or "").strip()
        if translated:
            return translated
        errors.append(f"{provider.name}: empty output")

    raise TranslationError("; ".join(errors) or "no translation backend configured")


TRANSLATED_FIELDS = {
    "knowledge_base_ru": ("knowledge_base", "ru"),
    "knowledge_base_en": ("knowledge_base", "en"),
    "profession_ru": ("profession", "ru"),
    "profession_en": ("profession", "en"),
}


def translate_profile(db: Session, profile_id: UUID) -> Result[dict]:
    """Produce ru/en variants of the public KB and profession.

    All translations run in parallel; if any of them fails nothing is written.
    """
    profile = _get_profile(db, profile_id)
    if not profile:
        return Result.failure("Profile not found", NO_PROFILE)

    jobs = {}
    for field, (source_field, language) in TRANSLATED_FIELDS.items():
        source_text = _present(getattr(profile, source_field))
        if source_text:
            jobs[field] = (source_text, language)
    if not jobs:
        return Result.success({})

    with ThreadPoolExecutor(max_workers=len(jobs)) as pool:
        futures = {field: pool.submit(translate_text, text, language) for field, (text, language) in jobs.items()}
        translations = {}
        failures = []
        for field, future in futures.items():
            try:
                translations[field] = future.result()
            except TranslationError as exc:
                failures.append(f"{field}: {exc}")

    if failures:
        logger.error(
            "Profile translation failed, nothing written",
            extra={"context": {"profile_id": str(profile_id), "failures": failures}},
        )
        return Result.failure("; ".join(failures), TRANSLATION_FAILED)

    for field, value in translations.items():
        setattr(profile, field, value)
    profile.updated_at = datetime.now(timezone.utc)
    db.commit()
    logger.info(
        "Profile translated",
        extra={"context": {"profile_id": str(profile_id), "fields": sorted(translations)}},
    )
    return Result.success(translations)
