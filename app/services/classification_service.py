"""Decide whether an owner message is a knowledge update and which tier it targets.

Cheap regex buckets run first; the LLM classifier is consulted only when no
rule fires, and any output it gives that is not clean JSON means "no update".
"""

import os
import re
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.services import knowledge_service
from app.services.ai_service import extract_json, generate_text
from app.services.knowledge_service import PRIVATE, PUBLIC

logger = get_logger("classification_service")

ASK = "ask"
TARGETS = (PUBLIC, PRIVATE, ASK)

BUCKET_PRIVATE = "private"
BUCKET_PUBLIC = "public"
BUCKET_GENERIC = "generic"

KNOWLEDGE_GUARD_FRACTION = float(os.environ.get("KNOWLEDGE_GUARD_FRACTION", "0.4"))
EDITOR_MAX_TOKENS = int(os.environ.get("KNOWLEDGE_EDITOR_MAX_TOKENS", "3000"))
EDITOR_TIMEOUT_SECONDS = float(os.environ.get("KNOWLEDGE_EDITOR_TIMEOUT_SECONDS", "15"))


@dataclass(frozen=True)
class ClassificationRule:
    bucket: str
    tag: str
    pattern: re.Pattern


@dataclass
class ClassificationDecision:
    wants_update: bool
    target: Optional[str] = None
    source: str = "none"  # rules, llm, none


def _rule(bucket: str, tag: str, pattern: str) -> ClassificationRule:
    return ClassificationRule(bucket=bucket, tag=tag, pattern=re.compile(pattern, re.IGNORECASE))


CLASSIFICATION_RULES = [
    # Private signals
    _rule(
        BUCKET_PRIVATE,
        "access_code",
        r"\b(door|gate|safe|alarm|lock|garage|entrance|wi-?fi|locker)\s+(code|pin|password|combination)\b",
    ),
    _rule(BUCKET_PRIVATE, "recipe", r"\b(recipes?|secret ingredients?|our formula)\b"),
    _rule(
        BUCKET_PRIVATE,
        "supplier_cost",
        r"\b(suppliers?|wholesale|purchase price|cost price|margins?|markup|profit)\b",
    ),
    _rule(
        BUCKET_PRIVATE,
        "personal_note",
        r"\b(note to self|for me only|only for me|just for me|personal note|between us|confidential|internal only"
        r"|keep (?:this|it) (?:secret|private)|(?:don't|do not) tell (?:the )?(?:customers|clients))\b",
    ),
    _rule(
        BUCKET_PRIVATE,
        "credentials",
        r"\b(login|logins|password|passcode|credentials?|admin (?:panel|account|login))\b",
    ),
    _rule(
        BUCKET_PRIVATE,
        "banking",
        r"\b(iban|bank account|account number|swift|card number|salary|salaries|payroll)\b",
    ),
    _rule(
        BUCKET_PRIVATE,
        "private_ru",
        r"(код от двери|код двери|код сейфа|пароль|рецепт|поставщик|закупочн|маржа|наценк|зарплат"
        r"|секрет|только для меня|не говори клиентам)",
    ),
    _rule(BUCKET_PRIVATE, "private_az", r"(qapı kodu|şifrə|parol|resept|təchizatçı|maaş|gizli|yalnız mənim üçün)"),
    # Public signals
    _rule(
        BUCKET_PUBLIC,
        "hours",
        r"\b(hours|opening times?|working days|closing time|open (?:from|until|till|at|on|daily)"
        r"|closed? (?:on|at|from|until)|(?:mon|tues|wednes|thurs|fri|satur|sun)days?|weekends?)\b",
    ),
    _rule(BUCKET_PUBLIC, "time_range", r"\b\d{1,2}(?::\d{2})?\s*(?:am|pm)\b|\b\d{1,2}(?::\d{2})?\s*-\s*\d{1,2}(?::\d{2})?\b"),
    _rule(
        BUCKET_PUBLIC,
        "price",
        r"(?<!supplier )(?<!wholesale )\b(prices?|pricing|fees?|tariffs?|discounts?|promotions?|promo)\b"
        r"|\d+\s*(?:azn|manat|usd|eur|rub)\b|[₼$€₽]\s*\d+",
    ),
    _rule(
        BUCKET_PUBLIC,
        "service",
        r"\b(services?|menu|treatments?|we (?:now )?offer|new (?:dish|product|service)|we (?:now )?sell)\b",
    ),
    _rule(BUCKET_PUBLIC, "address", r"\b(address|located|location|moved to|parking|directions)\b"),
    _rule(
        BUCKET_PUBLIC,
        "policy",
        r"\b(polic(?:y|ies)|cancellations?|refunds?|deposits?|delivery|booking rules)\b",
    ),
    _rule(
        BUCKET_PUBLIC,
        "announcement",
        r"\b(announce(?:ment)?|holidays?|tell (?:the )?(?:customers|clients)|customers should know)\b",
    ),
    _rule(
        BUCKET_PUBLIC,
        "public_ru",
        r"(работаем|часы работы|график|цена|цены|стоимость|прайс|услуг|меню|адрес|находимся|скидк|акци)",
    ),
    _rule(BUCKET_PUBLIC, "public_az", r"(iş saat|qiymət|xidmət|menyu|ünvan|endirim|kampaniya)"),
    # Generic update phrasings
    _rule(
        BUCKET_GENERIC,
        "remember",
        r"^\s*(?:please\s+)?(?:remember|note|keep in mind|update|add|change|fyi)\b|\b(remember that|please note|from now on)\b",
    ),
    _rule(BUCKET_GENERIC, "remember_ru", r"^\s*(запомни|обнови|добавь|измени|учти)"),
    _rule(BUCKET_GENERIC, "remember_az", r"^\s*(yadda saxla|əlavə et|yenilə|dəyiş)"),
]


def match_rules(text: str) -> list[ClassificationRule]:
    if not text:
        return []
    return [rule for rule in CLASSIFICATION_RULES if rule.pattern.search(text)]


def match_rule_buckets(text: str) -> set[str]:
    return {rule.bucket for rule in match_rules(text)}


def classify_by_rules(text: str) -> Optional[ClassificationDecision]:
    """Decision table over bucket hits; None when no bucket fired."""
    buckets = match_rule_buckets(text)
    private_hit = BUCKET_PRIVATE in buckets
    public_hit = BUCKET_PUBLIC in buckets

    if private_hit and public_hit:
        return ClassificationDecision(wants_update=True, target=ASK, source="rules")
    if private_hit:
        return ClassificationDecision(wants_update=True, target=PRIVATE, source="rules")
    if public_hit:
        return ClassificationDecision(wants_update=True, target=PUBLIC, source="rules")
    if BUCKET_GENERIC in buckets:
        return ClassificationDecision(wants_update=True, target=ASK, source="rules")
    return None


CLASSIFIER_PROMPT = """You sort messages from a business owner to their AI receptionist.
Decide whether the message gives NEW information the receptionist should store, and where:
- "public": customer-facing facts (hours, prices, services, address, policies, announcements)
- "private": owner-only facts (codes, passwords, suppliers, costs, margins, recipes, personal notes)
- "ask": it is an update but you cannot tell which
Questions, greetings, small talk and requests for advice are NOT updates.
The owner {public_state} a public knowledge base and {private_state} a private vault.
Return ONLY JSON: {{"wants_update": true/false, "target": "public"|"private"|"ask"}}"""


def _classify_with_llm(text: str, has_public_kb: bool, has_private_vault: bool) -> ClassificationDecision:
    prompt = CLASSIFIER_PROMPT.format(
        public_state="has" if has_public_kb else "does not have",
        private_state="has" if has_private_vault else "does not have",
    )
    payload = extract_json(prompt, text, stage="owner_classify")
    if payload is None:
        return ClassificationDecision(wants_update=False, source="llm")

    wants_update = payload.get("wants_update")
    target = payload.get("target")
    if wants_update is not True:
        return ClassificationDecision(wants_update=False, source="llm")
    if target not in TARGETS:
        logger.warning("Classifier returned unknown target", extra={"context": {"target": target}})
        return ClassificationDecision(wants_update=False, source="llm")
    return ClassificationDecision(wants_update=True, target=target, source="llm")


def classify(text: str, has_public_kb: bool, has_private_vault: bool) -> ClassificationDecision:
    decision = classify_by_rules(text)
    if decision is None:
        decision = _classify_with_llm(text, has_public_kb, has_private_vault)
    logger.info(
        "Owner message classified",
        extra={
            "context": {
                "wants_update": decision.wants_update,
                "target": decision.target,
                "source": decision.source,
            }
        },
    )
    return decision


EDITOR_PROMPT = """You maintain the {tier_label} of a business.
RULES:
1. Preserve ALL existing content. Remove something only if the owner explicitly asks to remove it.
2. If the new information updates an existing fact, change that fact in place.
3. Otherwise add the new information as a new short section at the end.
4. Keep the owner's language and formatting. Do not invent facts.
Return ONLY the complete updated text, with no explanations.

CURRENT TEXT:
{current}"""

TIER_LABELS = {
    PUBLIC: "public knowledge base (shown to customers)",
    PRIVATE: "private vault (owner-only notes)",
}


def merge_knowledge(current: Optional[str], new_info: str, tier: str) -> Optional[str]:
    """Ask the editor model for the updated tier text. None on failure."""
    prompt = EDITOR_PROMPT.format(tier_label=TIER_LABELS[tier], current=(current or "").strip() or "(empty)")
    try:
        content = generate_text(
            prompt,
            [],
            f"New information from the owner:\n{new_info}",
            EDITOR_MAX_TOKENS,
            temperature=0.2,
            timeout_seconds=EDITOR_TIMEOUT_SECONDS,
            stage="knowledge_merge",
        )
    except Exception as exc:
        logger.warning(f"Knowledge merge failed: {exc}")
        return None
    return content.strip() or None


def is_degenerate_rewrite(original: Optional[str], candidate: Optional[str]) -> bool:
    """Empty output, or output shorter than the guard fraction of a non-empty original."""
    if not candidate or not candidate.strip():
        return True
    base = (original or "").strip()
    if not base:
        return False
    return len(candidate.strip()) < KNOWLEDGE_GUARD_FRACTION * len(base)


def apply_knowledge_update(db: Session, profile_id: UUID, tier: str, new_info: str) -> bool:
    """Merge new_info into the tier. Returns False (store untouched) when the rewrite is rejected."""
    if tier not in (PUBLIC, PRIVATE):
        raise ValueError(f"Cannot apply update to tier: {tier}")

    # Base-language text is the merge source; variants are derived from it.
    current = knowledge_service.get_tier(db, profile_id, tier)
    merged = merge_knowledge(current, new_info, tier)
    if is_degenerate_rewrite(current, merged):
        logger.warning(
            "Knowledge rewrite rejected",
            extra={
                "context": {
                    "profile_id": str(profile_id),
                    "tier": tier,
                    "original_chars": len(current or ""),
                    "candidate_chars": len(merged or ""),
                }
            },
        )
        return False

    knowledge_service.set_tier(db, profile_id, tier, merged)
    return True
