"""Input checks applied at the operation boundary.

Observation atomicity rules (used by ``save_memory``):
    - at most 150 characters
    - at most 2 sentences, counted by splitting on ``.``, ``!`` and ``?``

The sentence counter is naive on purpose: "Mr. Smith" or "v1.2" count as
extra sentences. Rejecting some technical text is accepted in exchange for
keeping observations one fact each.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime

from threadgraph.errors import ValidationError
from threadgraph.models import format_timestamp

MAX_OBSERVATION_LENGTH = 150
MAX_OBSERVATION_SENTENCES = 2

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]")
_FORBIDDEN_THREAD_CHARS = ("/", "\\", "\x00")


@dataclass
class ObservationCheck:
    valid: bool
    error: str | None = None


def validate_observation(text: str) -> ObservationCheck:
    if len(text) > MAX_OBSERVATION_LENGTH:
        return ObservationCheck(
            valid=False,
            error=(
                f"Observation too long ({len(text)} chars). Max {MAX_OBSERVATION_LENGTH}. "
                "Split into multiple observations."
            ),
        )

    sentences = [s for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]
    if len(sentences) > MAX_OBSERVATION_SENTENCES:
        return ObservationCheck(
            valid=False,
            error=(
                f"Too many sentences ({len(sentences)}). Max {MAX_OBSERVATION_SENTENCES}. "
                "One fact per observation."
            ),
        )

    return ObservationCheck(valid=True)


def validate_entity_type(entity_type: str) -> list[str]:
    """Soft naming checks. Returns warnings, never fails."""
    warnings: list[str] = []
    if entity_type and entity_type[0] == entity_type[0].lower():
        suggested = entity_type[0].upper() + entity_type[1:]
        warnings.append(
            f"Entity type '{entity_type}' starts with lowercase. "
            f"Consider '{suggested}' (convention: capitalize first letter)"
        )
    if " " in entity_type:
        warnings.append(
            f"Entity type '{entity_type}' contains spaces. Consider using camelCase or removing spaces."
        )
    return warnings


def normalize_timestamp(value: str) -> str:
    """Parse an ISO-8601 timestamp and return it in canonical UTC form.

    Naive timestamps are taken as UTC. Lexicographic comparison of stored
    timestamps relies on every writer going through this function.
    """
    if not isinstance(value, str) or not value.strip():
        msg = f"Invalid timestamp: {value!r}"
        raise ValidationError(msg)
    try:
        dt = datetime.fromisoformat(value.strip())
    except ValueError as exc:
        msg = f"Invalid timestamp: {value!r} (expected ISO-8601)"
        raise ValidationError(msg) from exc
    return format_timestamp(dt)


def check_score(name: str, value: float) -> float:
    """Reject confidence/importance values that are not numbers in [0, 1]."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        msg = f"{name} must be a number, got {value!r}"
        raise ValidationError(msg)
    if not 0.0 <= value <= 1.0:
        msg = f"{name} must be between 0 and 1, got {value}"
        raise ValidationError(msg)
    return value


def check_required(name: str, value: str) -> str:
    """Names and types are keys on disk; records without them do not load back."""
    if not isinstance(value, str) or not value.strip():
        msg = f"{name} must be a non-empty string"
        raise ValidationError(msg)
    return value


def check_thread_id(value: str) -> str:
    """Thread ids name files on disk: non-empty, no path separators."""
    if not isinstance(value, str) or not value:
        msg = "agentThreadId must be a non-empty string"
        raise ValidationError(msg)
    if any(c in value for c in _FORBIDDEN_THREAD_CHARS):
        msg = f"agentThreadId may not contain path separators: {value!r}"
        raise ValidationError(msg)
    return value
