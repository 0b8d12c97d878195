"""Token budget estimation from the assistant's session transcript.

Only the tail of the transcript is read: the most recent ``context_window``
and ``context_used`` values are all the guardian needs.
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

logger = logging.getLogger(__name__)

TAIL_BYTES = 64 * 1024

_WINDOW_RE = re.compile(r'"context_window"\s*:\s*(\d+)')
_USED_RE = re.compile(r'"context_used"\s*:\s*(\d+)')

TranscriptStatus = Literal["healthy", "warning", "danger"]


@dataclass(frozen=True)
class TranscriptInfo:
    context_window: int
    context_used: int
    remaining_tokens: int
    remaining_percent: int
    status: TranscriptStatus


def status_for_remaining(remaining_percent: float) -> TranscriptStatus:
    if remaining_percent >= 30:
        return "healthy"
    if remaining_percent >= 10:
        return "warning"
    return "danger"


def find_transcript_path(home: Optional[Path], override: Optional[Path] = None) -> Optional[Path]:
    """First existing transcript among the standard locations."""
    candidates: list[Path] = []
    if home is not None:
        candidates.append(home / ".claude" / "sessions" / "current" / "transcript.jsonl")
        candidates.append(home / ".local" / "share" / "claude" / "transcript.jsonl")
    if override is not None:
        candidates.append(override)

    for path in candidates:
        if path.is_file():
            return path
    return None


def analyze_transcript(transcript_path: Optional[Path]) -> Optional[TranscriptInfo]:
    """Estimate the remaining context budget; None when no signal is available."""
    if transcript_path is None or not transcript_path.is_file():
        return None

    try:
        size = transcript_path.stat().st_size
        tail_size = min(size, TAIL_BYTES)
        if tail_size == 0:
            return None
        with open(transcript_path, "rb") as f:
            f.seek(size - tail_size, os.SEEK_SET)
            text = f.read(tail_size).decode("utf-8", errors="replace")
    except OSError as e:
        logger.debug(f"Could not read transcript: {e}")
        return None

    windows = _WINDOW_RE.findall(text)
    used = _USED_RE.findall(text)
    if not windows or not used:
        return None

    context_window = int(windows[-1])
    context_used = int(used[-1])
    if context_window <= 0:
        return None

    remaining_tokens = max(0, context_window - context_used)
    remaining_percent = round(remaining_tokens / context_window * 100)

    return TranscriptInfo(
        context_window=context_window,
        context_used=context_used,
        remaining_tokens=remaining_tokens,
        remaining_percent=remaining_percent,
        status=status_for_remaining(remaining_percent),
    )

