# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class CrateCIError(Exception):
    """Base class for every error crateci raises on purpose."""


class ConfigurationError(CrateCIError):
    """Malformed or ambiguous pipeline/matrix declaration. Raised before any job runs."""

    def __init__(self, message: str, details: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.details = details or []


@dataclass
class StepFailure(CrateCIError):
    """A toolchain command exited non-zero. Fatal for its job only."""
    job: str
    step: str
    cmd: str
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class StepTimeout(StepFailure):
    """A toolchain command ran past the caller-supplied timeout."""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' timed out: {self.cmd}"


@dataclass
class PublishError(CrateCIError):
    """Packaging or upload failed. Reported per job, never fails the build."""
    job: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"[{self.job}] publish failed: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)
