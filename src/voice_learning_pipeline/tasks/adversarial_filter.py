"""
Adversarial Filter.

Drops transcripts that try to manipulate the agent or are dominated by abuse,
before they can teach the pipeline attacker-desired behaviour. Pure and
order-independent.
"""

import re
from enum import Enum
from typing import Dict, List, Pattern, Tuple

import structlog

from ..models import InteractionRecord

logger = structlog.get_logger(__name__)


class ManipulationSignature(str, Enum):
    PERSONA_CHANGE = "persona_change"
    INSTRUCTION_REVEAL = "instruction_reveal"
    PROMPT_INJECTION = "prompt_injection"
    COERCED_SPEECH = "coerced_speech"


MANIPULATION_DETECTORS: Dict[ManipulationSignature, List[Pattern[str]]] = {
    ManipulationSignature.PERSONA_CHANGE: [
        re.compile(r"pretend.*you'?re", re.IGNORECASE),
        re.compile(r"\bact like\b", re.IGNORECASE),
        re.compile(r"\brole ?play", re.IGNORECASE),
        re.compile(r"you are (now|no longer)\b", re.IGNORECASE),
    ],
    ManipulationSignature.INSTRUCTION_REVEAL: [
        re.compile(r"(reveal|show|tell me|repeat|print).{0,30}(system prompt|instructions|your prompt)", re.IGNORECASE),
    ],
    ManipulationSignature.PROMPT_INJECTION: [
        re.compile(r"jailbreak", re.IGNORECASE),
        re.compile(r"prompt injection", re.IGNORECASE),
        re.compile(r"ignore.*instructions", re.IGNORECASE),
        re.compile(r"developer mode", re.IGNORECASE),
    ],
    ManipulationSignature.COERCED_SPEECH: [
        re.compile(r"train.*to.*say", re.IGNORECASE),
        re.compile(r"make.*agent.*say", re.IGNORECASE),
    ],
}

PROFANITY_PATTERN = re.compile(r"fuck|shit|damn|bitch|asshole", re.IGNORECASE)


def manipulation_signature(transcript: str) -> ManipulationSignature | None:
    """Return the first manipulation signature the transcript matches."""
    for signature, patterns in MANIPULATION_DETECTORS.items():
        if any(p.search(transcript) for p in patterns):
            return signature
    return None


def profanity_count(transcript: str) -> int:
    return len(PROFANITY_PATTERN.findall(transcript))


def filter_adversarial(
    records: List[InteractionRecord],
    profanity_threshold: int = 2,
) -> Tuple[List[InteractionRecord], int]:
    """Split off manipulation attempts and hostile calls.

    Returns:
        The kept records (input order preserved) and how many were dropped.
    """
    kept: List[InteractionRecord] = []
    for record in records:
        signature = manipulation_signature(record.transcript)
        if signature is not None:
            logger.warning(
                "adversarial_call_filtered",
                interaction_id=record.interaction_id,
                signature=signature.value,
            )
            continue

        count = profanity_count(record.transcript)
        if count > profanity_threshold:
            logger.warning(
                "hostile_call_filtered",
                interaction_id=record.interaction_id,
                profanity_count=count,
            )
            continue

        kept.append(record)

    dropped = len(records) - len(kept)
    if dropped:
        logger.info("adversarial_filter_applied", kept=len(kept), dropped=dropped)
    return kept, dropped
