# git.py
# Small, focused wrapper around the Git CLI.
# Trigger detection and the run header read repository facts through here
# so nothing else calls subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

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


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def exact_tag(cwd: Optional[str] = None) -> Optional[str]:
    """
    The tag pointing exactly at HEAD, or None.

    `git describe --exact-match` exits 128 when HEAD is untagged; that is
    the normal "ordinary commit" case, not an error.
    """
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """Checked-out branch name, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name
