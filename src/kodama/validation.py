"""Input guards shared by every read and write path.

Snapshot ids and id prefixes come from the command line and end up in file
names, so every lookup passes through ``ensure_safe_id`` before touching the
filesystem.
"""

from __future__ import annotations

import re
from typing import Literal, Optional, get_args

from .errors import SnapshotValidationError

Step = Literal["requirements", "designing", "implementing", "testing"]
VALID_STEPS: tuple[str, ...] = get_args(Step)

MIN_PREFIX_LENGTH = 4
MAX_ID_LENGTH = 100

_STEP_ALIASES = {
    "requirement": "requirements",
    "req": "requirements",
    "design": "designing",
    "implement": "implementing",
    "impl": "implementing",
    "test": "testing",
    "tests": "testing",
}

_STEP_PROGRESSION = {
    "requirements": "designing",
    "designing": "implementing",
    "implementing": "testing",
    "testing": "testing",
}

_ID_CHARS_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def is_safe_id(value: Optional[str]) -> bool:
    """True for a non-empty id without traversal or separator characters."""
    if not value or len(value) > MAX_ID_LENGTH:
        return False
    if ".." in value or "/" in value or "\\" in value or "\x00" in value:
        return False
    return bool(_ID_CHARS_RE.match(value))


def ensure_safe_id(value: Optional[str], *, min_length: int = 1) -> str:
    """Return ``value`` or raise SnapshotValidationError.

    Args:
        value: Snapshot id or id prefix
        min_length: Minimum accepted length (prefix lookups use 4)
    """
    if not is_safe_id(value):
        raise SnapshotValidationError(f"Invalid snapshot ID: {value!r}")
    if len(value) < min_length:
        raise SnapshotValidationError(
            f"Snapshot ID '{value}' is too short. Use at least {min_length} characters."
        )
    return value


def is_valid_step(value: object) -> bool:
    return isinstance(value, str) and value in VALID_STEPS


def parse_step(value: object, fallback: Optional[str] = None) -> Optional[str]:
    """Parse a step value, accepting common aliases and unambiguous prefixes."""
    if is_valid_step(value):
        return value  # type: ignore[return-value]

    if isinstance(value, str):
        normalized = value.strip().lower()
        if not normalized:
            return fallback
        if normalized in _STEP_ALIASES:
            return _STEP_ALIASES[normalized]
        for step in VALID_STEPS:
            if step.startswith(normalized):
                return step

    return fallback


def next_step(current: Optional[str]) -> str:
    """Next step in the workflow progression; testing is terminal."""
    if current in _STEP_PROGRESSION:
        return _STEP_PROGRESSION[current]
    return "requirements"


_PERIOD_RE = re.compile(r"^\s*(\d+)\s*(d|day|days|w|week|weeks|m|month|months)\s*$", re.IGNORECASE)
_PERIOD_DAYS = {"d": 1, "day": 1, "days": 1, "w": 7, "week": 7, "weeks": 7, "m": 30, "month": 30, "months": 30}


def parse_period_days(text: str) -> int:
    """Parse "30 days", "2 weeks", "1 month" (or "30d", "2w", "1m") into days."""
    match = _PERIOD_RE.match(text or "")
    if not match:
        raise SnapshotValidationError(
            f'Invalid time period: {text}. Use format like "30 days", "2 weeks", "1 month"'
        )
    return int(match.group(1)) * _PERIOD_DAYS[match.group(2).lower()]
