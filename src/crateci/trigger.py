# trigger.py
from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from .errors import ConfigurationError
from .git_facts.git import current_branch, exact_tag
from .model import Trigger

logger = logging.getLogger(__name__)


# Release tags (v1.2.3, v1.2-rc1) and the main branch.
DEFAULT_BRANCHES_ONLY = [
    r"^v\d+\.\d+\.\d+.*$",
    r"^v\d+\.\d+.*$",
    "master",
]


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def trigger_from_env(environ: Mapping[str, str]) -> Optional[Trigger]:
    """
    Read the trigger from the invoking CI's environment.

    Understands AppVeyor, GitHub Actions, and a generic CI_TAG / CI_BRANCH
    pair. Returns None when none of them is present.
    """
    if "APPVEYOR_REPO_TAG" in environ:
        is_tag = _truthy(environ.get("APPVEYOR_REPO_TAG"))
        tag_name = environ.get("APPVEYOR_REPO_TAG_NAME") or None
        return Trigger(
            is_tag=is_tag,
            tag=tag_name if is_tag else None,
            branch=environ.get("APPVEYOR_REPO_BRANCH") or None,
        )

    ref = environ.get("GITHUB_REF")
    if ref:
        if ref.startswith("refs/tags/"):
            return Trigger(is_tag=True, tag=ref[len("refs/tags/"):])
        if ref.startswith("refs/heads/"):
            return Trigger(branch=ref[len("refs/heads/"):])
        return Trigger(branch=environ.get("GITHUB_HEAD_REF") or None)

    if environ.get("CI_TAG"):
        return Trigger(is_tag=True, tag=environ["CI_TAG"], branch=environ.get("CI_BRANCH") or None)
    if environ.get("CI_BRANCH"):
        return Trigger(branch=environ["CI_BRANCH"])

    return None


def trigger_from_git() -> Trigger:
    """Tag push if HEAD carries an exact tag, otherwise an ordinary commit."""
    try:
        tag = exact_tag()
    except (subprocess.CalledProcessError, FileNotFoundError):
        tag = None
    try:
        branch = current_branch()
    except (subprocess.CalledProcessError, FileNotFoundError):
        branch = None
    if tag:
        return Trigger(is_tag=True, tag=tag, branch=branch)
    return Trigger(branch=branch)


def detect_trigger(
    environ: Mapping[str, str],
    *,
    tag: Optional[str] = None,
    branch: Optional[str] = None,
    use_git: bool = False,
) -> Trigger:
    """
    Explicit tag/branch (CLI flags) win, then the CI environment, then git
    (if `use_git`), then "ordinary commit on an unknown branch".
    """
    if tag:
        return Trigger(is_tag=True, tag=tag, branch=branch)
    if branch:
        return Trigger(branch=branch)

    found = trigger_from_env(environ)
    if found is not None:
        return found
    if use_git:
        return trigger_from_git()
    return Trigger()


@dataclass
class BranchFilter:
    """
    Whitelist of refs (branch or tag names) allowed to run the pipeline.

    Entries are regexes when they start with '^' or end with '$' and exact
    names otherwise. An empty whitelist allows everything.
    """
    only: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._compiled = []
        for entry in self.only:
            if entry.startswith("^") or entry.endswith("$"):
                try:
                    self._compiled.append(re.compile(entry))
                except re.error as e:
                    raise ConfigurationError(f"branches.only: bad pattern {entry!r}: {e}") from e
            else:
                self._compiled.append(entry)

    def allows(self, ref: Optional[str]) -> bool:
        if not self.only:
            return True
        if ref is None:
            # unknown ref (local run): don't block it
            return True
        for rule in self._compiled:
            if isinstance(rule, str):
                if ref == rule:
                    return True
            elif rule.match(ref):
                return True
        return False
