"""Tag normalization and tag-based snapshot organization."""

from __future__ import annotations

import re
from collections import Counter
from datetime import datetime, timezone
from typing import Iterable, Optional

MAX_TAG_LENGTH = 50

_WHITESPACE_RE = re.compile(r"\s+")
_DISALLOWED_RE = re.compile(r"[^a-z0-9\-_/]")
_SPLIT_RE = re.compile(r"[,\s]+")


def normalize_tag(tag: str) -> str:
    """Lowercase, hyphenate whitespace, drop disallowed characters, cap length."""
    tag = _WHITESPACE_RE.sub("-", tag.strip().lower())
    tag = _DISALLOWED_RE.sub("", tag)
    return tag[:MAX_TAG_LENGTH]


def normalize_tags(tags: Iterable[str]) -> list[str]:
    """Normalize and deduplicate, keeping first-seen order and dropping empties."""
    seen: dict[str, None] = {}
    for tag in tags:
        normalized = normalize_tag(tag)
        if normalized:
            seen.setdefault(normalized, None)
    return list(seen)


def parse_tags(text: Optional[str]) -> list[str]:
    """Parse comma or space separated tags."""
    if not text:
        return []
    return normalize_tags(part for part in _SPLIT_RE.split(text) if part)


def auto_tags(git_branch: Optional[str], now: Optional[datetime] = None) -> list[str]:
    """Tags derived from context: the git branch (unless main/master) and a YYYY-MM tag."""
    tags: list[str] = []
    if git_branch and git_branch not in ("main", "master"):
        tags.append(normalize_tag(git_branch))
    now = now or datetime.now(timezone.utc)
    tags.append(now.strftime("%Y-%m"))
    return normalize_tags(tags)


def filter_by_tags(snapshots: list, tags: Iterable[str]) -> list:
    """Snapshots carrying any of ``tags``; all snapshots when ``tags`` is empty."""
    wanted = set(normalize_tags(tags))
    if not wanted:
        return list(snapshots)
    return [s for s in snapshots if wanted.intersection(s.tags)]


def tag_stats(snapshots: list, top: int = 10) -> dict:
    """Tag frequency summary over ``snapshots`` (expected newest first)."""
    counts: Counter[str] = Counter()
    for snapshot in snapshots:
        counts.update(snapshot.tags)

    recent: dict[str, None] = {}
    for snapshot in snapshots[:10]:
        for tag in snapshot.tags:
            recent.setdefault(tag, None)

    return {
        "total_tags": len(counts),
        "top_tags": [{"tag": tag, "count": count} for tag, count in counts.most_common(top)],
        "recent_tags": list(recent),
    }
