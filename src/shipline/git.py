# git.py
# Thin wrapper around the Git CLI. The engine itself never needs git; the
# CLI uses it to default the trigger ref to the checked-out branch.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout, stripped.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def current_branch(cwd: Optional[str | Path] = None) -> Optional[str]:
    """
    Name of the checked-out branch, or None on a detached HEAD.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def default_ref(cwd: Optional[str | Path] = None, fallback: str = "main") -> str:
    """Current branch when inside a repository, else `fallback`."""
    try:
        return current_branch(cwd) or fallback
    except (subprocess.CalledProcessError, OSError):
        return fallback
