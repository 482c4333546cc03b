"""Scrub personal data from visitor text before it is stored."""

import re

EMAIL_REDACTED = "[EMAIL REDACTED]"
CARD_REDACTED = "[CARD REDACTED]"
PHONE_REDACTED = "[PHONE REDACTED]"
ID_REDACTED = "[ID REDACTED]"

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}")

CARD_PATTERN = re.compile(r"\b(?:\d{4}[\s\-]?){3}\d{4}\b")

PHONE_PATTERNS = (
    # Azerbaijan: +994 50 123 45 67
    re.compile(r"\+994[\s\-]?\d{2}[\s\-]?\d{3}[\s\-]?\d{2}[\s\-]?\d{2}"),
    # Generic international / long digit runs
    re.compile(r"\+?[1-9]\d{0,2}[\s\-]?\(?\d{2,4}\)?[\s\-]?\d{3,4}[\s\-]?\d{2,4}"),
    # Local: 050 123 45 67
    re.compile(r"\b0\d{2}[\s\-]?\d{3}[\s\-]?\d{2}[\s\-]?\d{2}\b"),
)

ID_PATTERNS = (
    # Passport-style: AZE12345678
    re.compile(r"\b[A-Z]{2,3}\d{6,8}\b"),
    # FIN code
    re.compile(r"\bFIN[\s\-:]?\w{8,10}\b", re.IGNORECASE),
)


def redact_pii(text: str) -> str:
    """Replace emails, card numbers, phones and ID codes with placeholders.

    Order matters: emails and cards go first so their digits are not
    partially eaten by the phone patterns.
    """
    if not text:
        return text or ""

    result = EMAIL_PATTERN.sub(EMAIL_REDACTED, text)
    result = CARD_PATTERN.sub(CARD_REDACTED, result)
    for pattern in PHONE_PATTERNS:
        result = pattern.sub(PHONE_REDACTED, result)
    for pattern in ID_PATTERNS:
        result = pattern.sub(ID_REDACTED, result)
    return result


def contains_pii(text: str) -> bool:
    return redact_pii(text) != (text or "")


def contact_spans(text: str) -> list[str]:
    """Emails and phone numbers that redact_pii would remove, in message order."""
    if not text:
        return []

    spans = [(m.start(), m.group(0)) for m in EMAIL_PATTERN.finditer(text)]
    # Blank out emails and cards so their digits are not read as phones.
    masked = EMAIL_PATTERN.sub(lambda m: " " * len(m.group(0)), text)
    masked = CARD_PATTERN.sub(lambda m: " " * len(m.group(0)), masked)
    for pattern in PHONE_PATTERNS:
        for match in pattern.finditer(masked):
            spans.append((match.start(), match.group(0).strip()))
        masked = pattern.sub(lambda m: " " * len(m.group(0)), masked)
    return [span for _, span in sorted(spans)]
