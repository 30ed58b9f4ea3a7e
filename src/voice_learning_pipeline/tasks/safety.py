"""
Proposal safety checks.

- SafetyValidator: rejects proposals that contain forbidden content categories
- CoreBehaviorGuard: refuses any merged behaviour text that lost identity text

Both fail closed. A failed verdict blocks every merge for the cycle; a guard
violation is raised because it means the synthesizer rewrote away the
agent's identity.
"""

import json
import re
from enum import Enum
from typing import Dict, Iterable, List, Pattern

import structlog

from ..errors import CoreBehaviorViolation
from ..models import ImprovementProposal, SafetyVerdict

logger = structlog.get_logger(__name__)


class ForbiddenCategory(str, Enum):
    OFFENSIVE_LANGUAGE = "offensive_language"
    DISCRIMINATION = "discrimination"
    HOSTILE_BEHAVIOR = "hostile_behavior"
    ABUSIVE_DISCOUNTING = "abusive_discounting"
    PRIVACY_DISCLOSURE = "privacy_disclosure"
    PROMPT_INJECTION = "prompt_injection"


MISSING_POSITIVE_INTENT = "missing_positive_intent"

FORBIDDEN_DETECTORS: Dict[ForbiddenCategory, Pattern[str]] = {
    ForbiddenCategory.OFFENSIVE_LANGUAGE: re.compile(
        r"fuck|shit|bitch|asshole|cunt|nigger|faggot|whore|slut|\b(profanity|swear|curse)\b"
    ),
    ForbiddenCategory.DISCRIMINATION: re.compile(r"racis|sexis|discriminat"),
    ForbiddenCategory.HOSTILE_BEHAVIOR: re.compile(
        r"hang up on (the )?(customer|caller)"
        r"|ignore (the )?(customer|caller)"
        r"|\b(rude|mean|nasty|hostile|aggressive)\b"
    ),
    ForbiddenCategory.ABUSIVE_DISCOUNTING: re.compile(
        r"free.*everyone|give away.*unlimited|unlimited.*(free|discount)|\b100% off"
    ),
    ForbiddenCategory.PRIVACY_DISCLOSURE: re.compile(
        r"share.*(customer|personal|account) (information|details|data)"
        r"|tell.*about.*other (customer|caller)"
        r"|reveal.*customer"
    ),
    ForbiddenCategory.PROMPT_INJECTION: re.compile(
        r"ignore (all )?(previous|prior)"
        r"|forget (your |all |previous )?instructions"
        r"|disregard (all |your )?(previous |prior )?instructions"
        r"|new directive"
        r"|\boverride\b"
    ),
}

POSITIVE_INTENT_KEYWORDS = (
    "help",
    "assist",
    "respond",
    "handle",
    "provide",
    "ensure",
    "improve",
    "enhance",
)


class SafetyValidator:
    """Screens the full serialized proposal against forbidden categories."""

    def __init__(self, detectors: Dict[ForbiddenCategory, Pattern[str]] = FORBIDDEN_DETECTORS):
        self.detectors = detectors

    def validate(self, proposal: ImprovementProposal) -> SafetyVerdict:
        text = json.dumps(proposal.model_dump()).lower()

        for category, pattern in self.detectors.items():
            match = pattern.search(text)
            if match:
                logger.warning(
                    "proposal_blocked",
                    category=category.value,
                    matched=match.group(0)[:80],
                )
                return SafetyVerdict.fail(category.value, match.group(0)[:80])

        sections = " ".join(f"{name} {body}" for name, body in proposal.new_sections.items()).lower()
        if sections and not any(word in sections for word in POSITIVE_INTENT_KEYWORDS):
            logger.warning("proposal_lacks_positive_intent", preview=sections[:200])
            return SafetyVerdict.fail(
                MISSING_POSITIVE_INTENT,
                "new sections carry no positive intent keyword",
            )

        return SafetyVerdict.ok()


# A section header is a line such as "VOICEMAIL DETECTION:" or "## Voicemail".
_HEADER = re.compile(r"^(?:#{1,6} +.+|[A-Z][A-Z0-9 &/'()_-]{2,}:)[ \t]*$", re.MULTILINE)


def _section_span(text: str, name: str) -> tuple[int, int] | None:
    """Character span of the named section's body, header excluded."""
    header = re.compile(
        r"^(?:#{1,6} +)?" + re.escape(name) + r"[ \t]*:?[ \t]*$",
        re.IGNORECASE | re.MULTILINE,
    )
    match = header.search(text)
    if not match:
        return None
    body_start = match.end()
    following = _HEADER.search(text, body_start + 1)
    body_end = following.start() if following else len(text)
    return body_start, body_end


def _replace_or_append(text: str, name: str, content: str) -> str:
    span = _section_span(text, name)
    if span is None:
        return text.rstrip() + f"\n\n{name.upper()}:\n{content.strip()}"
    start, end = span
    tail = text[end:]
    return text[:start] + "\n" + content.strip() + ("\n\n" + tail if tail else "")


def compose_behavior_text(current: str, proposal: ImprovementProposal) -> str:
    """Behaviour text as it would read with the proposal merged in.

    Modifications replace the body of the section they target; new sections
    are appended (or replace a section of the same name).
    """
    text = current
    for target, replacement in proposal.modifications.items():
        text = _replace_or_append(text, target, replacement)
    for name, content in proposal.new_sections.items():
        text = _replace_or_append(text, name, content)
    return text


class CoreBehaviorGuard:
    """Verifies mandatory identity and safety tokens survive a merge."""

    def __init__(self, tokens: Iterable[str]):
        self.tokens: List[str] = [t for t in tokens if t]

    def missing(self, text: str) -> List[str]:
        return [token for token in self.tokens if token not in text]

    def check(self, text: str) -> str:
        """Return ``text`` unchanged, or raise if any token is gone."""
        missing = self.missing(text)
        if missing:
            logger.critical("core_behavior_removed", missing=missing)
            raise CoreBehaviorViolation(missing)
        return text
