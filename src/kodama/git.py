"""Git provenance for new snapshots."""

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[Path] = None) -> Optional[str]:
    try:
        completed = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=5,
            check=True,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    value = completed.stdout.strip()
    return value or None


def get_git_branch(cwd: Optional[Path] = None) -> Optional[str]:
    return _git(["branch", "--show-current"], cwd)


def get_git_commit(cwd: Optional[Path] = None) -> Optional[str]:
    return _git(["rev-parse", "--short", "HEAD"], cwd)
