"""Master-only editor for the platform-global knowledge document."""

import os
import re
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.services import knowledge_service
from app.services.ai_service import generate_text
from app.services.result import AI_ERROR, Result

logger = get_logger("global_knowledge_service")

REWRITE = "rewrite"
REMOVE = "remove"
PATCH = "patch"

GLOBAL_EDITOR_MAX_TOKENS = int(os.environ.get("GLOBAL_EDITOR_MAX_TOKENS", "4000"))
GLOBAL_EDITOR_TIMEOUT_SECONDS = float(os.environ.get("GLOBAL_EDITOR_TIMEOUT_SECONDS", "15"))

_GLOBAL_KB = r"(?:the\s+)?global\s+(?:knowledge(?:\s+base)?|kb)"

# Anchored at the start of the message; checked in this order.
GLOBAL_COMMAND_PATTERNS = (
    (REMOVE, re.compile(rf"^\s*(?:please\s+)?(?:remove|delete)\s+(?P<body>.+?)\s+from\s+{_GLOBAL_KB}\s*[.!]?\s*$", re.I | re.S)),
    (REWRITE, re.compile(rf"^\s*(?:please\s+)?(?:rewrite|replace)\s+{_GLOBAL_KB}\b\s*[:\-]?\s*(?P<body>.*)$", re.I | re.S)),
    (PATCH, re.compile(rf"^\s*(?:please\s+)?(?:update|add\s+to|patch)\s+{_GLOBAL_KB}\s*[:\-]\s*(?P<body>.+)$", re.I | re.S)),
)

REPLACE_SECTION_RE = re.compile(r"^\s*REPLACE_SECTION:\s*(?P<heading>.+?)\s*$", re.MULTILINE)
HEADING_RE = re.compile(r"^(?P<hashes>#{1,6})\s+(?P<title>.+?)\s*#*\s*$")


@dataclass
class GlobalCommand:
    mode: str
    body: str


def detect_global_command(text: str) -> Optional[GlobalCommand]:
    for mode, pattern in GLOBAL_COMMAND_PATTERNS:
        match = pattern.match(text or "")
        if match:
            return GlobalCommand(mode=mode, body=match.group("body").strip())
    return None


def _normalize_heading(value: str) -> str:
    value = re.sub(r"^#+\s*", "", value.strip())
    return re.sub(r"\s+", " ", value).strip().casefold()


def apply_section_patch(current: Optional[str], patch_output: str) -> str:
    """Apply editor patch output to the global document.

    ``REPLACE_SECTION: <heading>`` on the first line replaces the markdown
    section with that heading (until the next heading of the same or higher
    level). Without the sentinel, or if no heading matches, the content is
    appended.
    """
    current = (current or "").rstrip()
    output = (patch_output or "").strip()
    match = REPLACE_SECTION_RE.match(output)
    if not match:
        return f"{current}\n\n{output}".strip()

    heading = _normalize_heading(match.group("heading"))
    new_section = output[match.end():].strip()
    lines = current.splitlines()

    start = None
    level = 0
    for index, line in enumerate(lines):
        heading_match = HEADING_RE.match(line)
        if heading_match and _normalize_heading(heading_match.group("title")) == heading:
            start = index
            level = len(heading_match.group("hashes"))
            break

    if start is None:
        return f"{current}\n\n{new_section}".strip()

    end = len(lines)
    for index in range(start + 1, len(lines)):
        heading_match = HEADING_RE.match(lines[index])
        if heading_match and len(heading_match.group("hashes")) <= level:
            end = index
            break

    replacement = new_section.splitlines()
    if replacement and not HEADING_RE.match(replacement[0]):
        # Keep the original heading line when the editor sent only the body.
        replacement = [lines[start]] + replacement
    merged = lines[:start] + replacement + ([""] if end < len(lines) else []) + lines[end:]
    return "\n".join(merged).strip()


REWRITE_PROMPT = """You maintain the GLOBAL rules document that every AI receptionist on the platform must follow.
Rewrite the whole document according to the administrator's instructions. Use markdown headings (## Title) for sections.
Return ONLY the new document.

CURRENT DOCUMENT:
{current}"""

REMOVE_PROMPT = """You maintain the GLOBAL rules document that every AI receptionist on the platform must follow.
Remove exactly what the administrator asks to remove and keep everything else unchanged, word for word.
Return ONLY the full resulting document.

CURRENT DOCUMENT:
{current}"""

PATCH_PROMPT = """You maintain the GLOBAL rules document that every AI receptionist on the platform must follow.
Turn the administrator's update into a markdown section.
- If it changes an existing section, start your answer with the line "REPLACE_SECTION: <exact existing heading>" followed by the full new section.
- Otherwise return only the new section, starting with a "## " heading.
Return nothing else.

EXISTING HEADINGS:
{headings}"""


def _headings(current: str) -> str:
    titles = [m.group("title") for m in (HEADING_RE.match(line) for line in current.splitlines()) if m]
    return "\n".join(f"- {title}" for title in titles) or "(none)"


def run_global_command(db: Session, command: GlobalCommand, author_profile_id: UUID) -> Result[str]:
    """Execute a rewrite/remove/patch command. Caller must have checked master authority."""
    current = knowledge_service.get_global(db) or ""
    if command.mode == PATCH:
        prompt = PATCH_PROMPT.format(headings=_headings(current))
    elif command.mode == REMOVE:
        prompt = REMOVE_PROMPT.format(current=current or "(empty)")
    else:
        prompt = REWRITE_PROMPT.format(current=current or "(empty)")

    try:
        output = generate_text(
            prompt,
            [],
            command.body,
            GLOBAL_EDITOR_MAX_TOKENS,
            temperature=0.2,
            timeout_seconds=GLOBAL_EDITOR_TIMEOUT_SECONDS,
            stage=f"global_{command.mode}",
        )
    except Exception as exc:
        logger.warning(f"Global knowledge {command.mode} failed: {exc}")
        return Result.failure(str(exc), AI_ERROR)

    if not output.strip():
        logger.warning("Global knowledge editor returned empty output", extra={"context": {"mode": command.mode}})
        return Result.failure("Editor returned empty output", AI_ERROR)

    updated = apply_section_patch(current, output) if command.mode == PATCH else output.strip()
    knowledge_service.set_global(db, updated, author_profile_id)
    return Result.success(updated)
